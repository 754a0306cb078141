"""Tests for the SQLite state store."""

import sqlite3
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from allisa_connector.errors import StateStoreError
from allisa_connector.sync.state_store import StateStore


class TestStateStore:
    """Tests for StateStore."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "test_state.db"
        self.store = StateStore(db_path=self.db_path)

    def teardown_method(self):
        """Clean up."""
        self.store.close()

    def test_watermark_missing(self):
        """Test an unknown connector has no watermark."""
        assert self.store.get_watermark("conn") is None
        assert self.store.load_state("conn").watermark == 0

    def test_set_and_get_watermark(self):
        """Test watermarks are stored per connector."""
        self.store.set_watermark("conn", 103)
        self.store.set_watermark("other", 7)

        assert self.store.get_watermark("conn") == 103
        assert self.store.get_watermark("other") == 7

    def test_watermark_survives_reopen(self):
        """Test the watermark is durable."""
        self.store.set_watermark("conn", 103)
        self.store.close()

        reopened = StateStore(db_path=self.db_path)
        try:
            state = reopened.load_state("conn")
        finally:
            reopened.close()

        assert state.connector_id == "conn"
        assert state.watermark == 103

    def test_reset_watermark(self):
        """Test an explicit reset moves the watermark back."""
        self.store.set_watermark("conn", 103)

        self.store.reset_watermark("conn", 50)

        assert self.store.get_watermark("conn") == 50

    def test_int_values(self):
        """Test integer cursors."""
        assert self.store.get_int("allisa_last_sync_id") is None

        self.store.put_int("allisa_last_sync_id", 10)
        self.store.put_int("allisa_last_sync_id", 12)

        assert self.store.get_int("allisa_last_sync_id") == 12

    def test_delivery_ledger(self):
        """Test accepted deliveries are remembered."""
        assert self.store.is_delivered("key-1") is False

        self.store.mark_delivered("key-1", "tg-1", "P-1")
        self.store.mark_delivered("key-1", "tg-1", "P-1")

        assert self.store.is_delivered("key-1") is True
        assert self.store.is_delivered("key-2") is False

    def test_failed_attempts(self):
        """Test failed cycles are counted until cleared."""
        assert self.store.record_failed_attempt("idem", "tg-1", "503") == 1
        assert self.store.record_failed_attempt("idem", "tg-1", "503") == 2
        assert self.store.get_failed_attempts("idem") == 2

        self.store.clear_attempts("idem")

        assert self.store.get_failed_attempts("idem") == 0

    def test_dead_letters(self):
        """Test dead letters are stored oldest first."""
        self.store.add_dead_letter("tg-1", 101, "External User Id is required", {"a": 1})
        self.store.add_dead_letter("tg-2", 102, "Can't find Allisa case", {"b": 2})

        letters = self.store.dead_letters()

        assert self.store.dead_letter_count() == 2
        assert [d.posting_id for d in letters] == ["tg-1", "tg-2"]
        assert letters[0].sequence == 101
        assert letters[0].payload == {"a": 1}

    def test_dead_letter_upsert(self):
        """Test dead-lettering a posting again replaces its reason."""
        self.store.add_dead_letter("tg-1", 101, "first", {})
        self.store.add_dead_letter("tg-1", 101, "second", {})

        letters = self.store.dead_letters()

        assert len(letters) == 1
        assert letters[0].reason == "second"

    def test_remove_dead_letters(self):
        """Test removing dead letters by posting id."""
        self.store.add_dead_letter("tg-1", 101, "bad", {})
        self.store.add_dead_letter("tg-2", 102, "bad", {})

        assert self.store.remove_dead_letters(["tg-1"]) == 1
        assert self.store.remove_dead_letters([]) == 0
        assert self.store.dead_letter_count() == 1

    def test_cursor_wraps_sqlite_error(self):
        """Test a failing statement is rolled back and wrapped."""
        with pytest.raises(StateStoreError, match="State store failure"):
            with self.store._cursor() as cursor:
                cursor.execute("SELECT * FROM missing_table")

    def test_unopenable_database(self):
        """Test a database path that cannot be opened."""
        with patch(
            "allisa_connector.sync.state_store.sqlite3.connect",
            side_effect=sqlite3.OperationalError("unable to open database file"),
        ):
            with pytest.raises(StateStoreError, match="Cannot open state store"):
                StateStore(db_path=Path(self.temp_dir) / "other.db")
