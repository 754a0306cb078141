"""Tests for Allisa case to WiseTime tag sync."""

import tempfile
from pathlib import Path
from unittest.mock import Mock, call

import pytest

from allisa_connector.errors import TargetRetryable
from allisa_connector.sync.models import AllisaCase
from allisa_connector.sync.state_store import StateStore
from allisa_connector.sync.tag_sync import (
    LAST_REFRESHED_KEY,
    LAST_REFRESHED_PAGE_KEY,
    LAST_SYNC_KEY,
    LAST_SYNC_PAGE_KEY,
    TagSync,
)

URL_PREFIX = "https://allisa.example/projekt/show/ID/"


def cases(*ids) -> list[AllisaCase]:
    return [
        AllisaCase(case_id=i, case_reference=f"P-{i}", case_description=f"Case {i}") for i in ids
    ]


class TestSyncNewCases:
    """Tests for TagSync.sync_new_cases."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = StateStore(db_path=Path(self.temp_dir) / "state.db")
        self.allisa = Mock()
        self.wisetime = Mock()
        self.tag_sync = TagSync(
            allisa=self.allisa,
            wisetime=self.wisetime,
            store=self.store,
            tag_upsert_path="/Allisa/",
            case_url_prefix=URL_PREFIX,
            batch_size=500,
        )

    def teardown_method(self):
        """Clean up."""
        self.store.close()

    def test_first_sync(self):
        """Test new cases are upserted and the page is kept for future cases."""
        self.allisa.get_new_cases.side_effect = [cases(1, 2), []]

        self.tag_sync.sync_new_cases()

        assert self.allisa.get_new_cases.call_args_list == [call(0, 1, 500), call(2, 2, 500)]
        self.wisetime.upsert_tags.assert_called_once_with(
            [
                {"name": "P-1", "description": "Case 1", "path": "/Allisa/", "url": URL_PREFIX + "1"},
                {"name": "P-2", "description": "Case 2", "path": "/Allisa/", "url": URL_PREFIX + "2"},
            ]
        )
        assert self.store.get_int(LAST_SYNC_KEY) == 2
        assert self.store.get_int(LAST_SYNC_PAGE_KEY) == 1

    def test_checks_next_page_when_current_page_is_complete(self):
        """Test an empty stored page is followed by one look at the next."""
        self.store.put_int(LAST_SYNC_KEY, 2)
        self.store.put_int(LAST_SYNC_PAGE_KEY, 1)
        self.allisa.get_new_cases.side_effect = [[], cases(3), []]

        self.tag_sync.sync_new_cases()

        assert self.allisa.get_new_cases.call_args_list == [
            call(2, 1, 500),
            call(2, 2, 500),
            call(3, 3, 500),
        ]
        self.wisetime.upsert_tags.assert_called_once()
        assert self.store.get_int(LAST_SYNC_KEY) == 3
        assert self.store.get_int(LAST_SYNC_PAGE_KEY) == 2

    def test_no_new_cases(self):
        """Test two empty pages leave the stored page where it was."""
        self.store.put_int(LAST_SYNC_KEY, 2)
        self.store.put_int(LAST_SYNC_PAGE_KEY, 1)
        self.allisa.get_new_cases.return_value = []

        self.tag_sync.sync_new_cases()

        assert self.allisa.get_new_cases.call_count == 2
        self.wisetime.upsert_tags.assert_not_called()
        assert self.store.get_int(LAST_SYNC_KEY) == 2
        assert self.store.get_int(LAST_SYNC_PAGE_KEY) == 1

    def test_several_pages(self):
        """Test the loop continues while pages have cases."""
        self.allisa.get_new_cases.side_effect = [cases(1, 2), cases(3, 4), cases(5), []]

        self.tag_sync.sync_new_cases()

        assert self.wisetime.upsert_tags.call_count == 3
        assert self.store.get_int(LAST_SYNC_KEY) == 5
        assert self.store.get_int(LAST_SYNC_PAGE_KEY) == 3

    def test_allisa_error_keeps_position(self):
        """Test a failed page read leaves stored cursors untouched."""
        self.store.put_int(LAST_SYNC_KEY, 2)
        self.store.put_int(LAST_SYNC_PAGE_KEY, 1)
        self.allisa.get_new_cases.side_effect = TargetRetryable("Allisa error (503)")

        with pytest.raises(TargetRetryable):
            self.tag_sync.sync_new_cases()

        assert self.store.get_int(LAST_SYNC_KEY) == 2
        assert self.store.get_int(LAST_SYNC_PAGE_KEY) == 1


class TestRefreshCases:
    """Tests for TagSync.refresh_cases."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = StateStore(db_path=Path(self.temp_dir) / "state.db")
        self.allisa = Mock()
        self.wisetime = Mock()
        self.tag_sync = TagSync(
            allisa=self.allisa,
            wisetime=self.wisetime,
            store=self.store,
            tag_upsert_path="/Allisa/",
            case_url_prefix=URL_PREFIX,
            batch_size=100,
        )

    def teardown_method(self):
        """Clean up."""
        self.store.close()

    def test_first_refresh(self):
        """Test the first refresh reads page one."""
        self.allisa.get_new_cases.return_value = cases(1, 2)

        self.tag_sync.refresh_cases()

        self.allisa.get_new_cases.assert_called_once_with(0, 1, 100)
        self.wisetime.upsert_tags.assert_called_once()
        assert self.store.get_int(LAST_REFRESHED_KEY) == 2
        assert self.store.get_int(LAST_REFRESHED_PAGE_KEY) == 1

    def test_next_page(self):
        """Test each refresh moves on by one page."""
        self.store.put_int(LAST_REFRESHED_KEY, 2)
        self.store.put_int(LAST_REFRESHED_PAGE_KEY, 1)
        self.allisa.get_new_cases.return_value = cases(3, 4)

        self.tag_sync.refresh_cases()

        self.allisa.get_new_cases.assert_called_once_with(2, 2, 100)
        assert self.store.get_int(LAST_REFRESHED_KEY) == 4
        assert self.store.get_int(LAST_REFRESHED_PAGE_KEY) == 2

    def test_wraps_around(self):
        """Test an empty page starts the refresh over."""
        self.store.put_int(LAST_REFRESHED_KEY, 4)
        self.store.put_int(LAST_REFRESHED_PAGE_KEY, 2)
        self.allisa.get_new_cases.return_value = []

        self.tag_sync.refresh_cases()

        self.wisetime.upsert_tags.assert_not_called()
        assert self.store.get_int(LAST_REFRESHED_KEY) == 0
        assert self.store.get_int(LAST_REFRESHED_PAGE_KEY) == 0
