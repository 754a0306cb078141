"""Tests for the poller."""

from unittest.mock import Mock

import pytest

from allisa_connector.errors import SourceDataError, SourceUnavailable
from allisa_connector.sync.poller import Poller


def raw_group(group_id: str, sequence: int) -> dict:
    return {
        "groupId": group_id,
        "sequence": sequence,
        "totalDurationSecs": 60,
        "user": {"externalId": "1"},
        "tags": [],
        "timeRows": [],
    }


class TestPoller:
    """Tests for Poller."""

    def setup_method(self):
        """Set up test fixtures."""
        self.source = Mock()
        self.poller = Poller(self.source)

    def test_fetch_batch(self):
        """Test postings come back in sequence order with the next watermark."""
        self.source.fetch_posted_time.return_value = [
            raw_group("b", 102),
            raw_group("a", 101),
            raw_group("c", 103),
        ]

        batch = self.poller.fetch_batch(100, 10)

        self.source.fetch_posted_time.assert_called_once_with(100, 10)
        assert [p.posting_id for p in batch.postings] == ["a", "b", "c"]
        assert batch.next_watermark == 103

    def test_empty_batch_keeps_watermark(self):
        """Test an empty batch reports the input watermark."""
        self.source.fetch_posted_time.return_value = []

        batch = self.poller.fetch_batch(100, 10)

        assert len(batch) == 0
        assert batch.next_watermark == 100

    def test_drops_postings_at_or_below_watermark(self):
        """Test stale postings are never returned."""
        self.source.fetch_posted_time.return_value = [
            raw_group("old", 99),
            raw_group("same", 100),
            raw_group("new", 101),
        ]

        batch = self.poller.fetch_batch(100, 10)

        assert [p.posting_id for p in batch.postings] == ["new"]
        assert batch.next_watermark == 101

    def test_respects_max_size(self):
        """Test the batch never exceeds max_size."""
        self.source.fetch_posted_time.return_value = [
            raw_group(str(seq), seq) for seq in range(101, 106)
        ]

        batch = self.poller.fetch_batch(100, 2)

        assert len(batch) == 2
        assert batch.next_watermark == 102

    def test_malformed_group(self):
        """Test unparseable records raise SourceDataError."""
        bad = raw_group("bad", 101)
        bad["sequence"] = "not-a-number"
        self.source.fetch_posted_time.return_value = [bad]

        with pytest.raises(SourceDataError, match="bad"):
            self.poller.fetch_batch(100, 10)

    def test_source_unavailable_propagates(self):
        """Test transport failures reach the engine unchanged."""
        self.source.fetch_posted_time.side_effect = SourceUnavailable("down")

        with pytest.raises(SourceUnavailable):
            self.poller.fetch_batch(100, 10)
