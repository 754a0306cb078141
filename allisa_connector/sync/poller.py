"""Poll WiseTime for postings after the watermark."""

import logging

from ..errors import SourceDataError
from .models import PostingBatch, TimePosting
from .protocols import PostingSourceProtocol

__all__ = ["Poller"]

logger = logging.getLogger(__name__)


class Poller:
    """Fetches ordered batches of postings from the source."""

    def __init__(self, source: PostingSourceProtocol):
        self.source = source

    def fetch_batch(self, since_watermark: int, max_size: int) -> PostingBatch:
        """Fetch up to `max_size` postings with sequence > `since_watermark`.

        Args:
            since_watermark: Last committed sequence
            max_size: Maximum postings in the batch

        Returns:
            PostingBatch ordered by sequence. next_watermark is the last
            posting's sequence, or `since_watermark` if the batch is empty.

        Raises:
            SourceUnavailable: Source could not be reached
            SourceDataError: Source returned records that cannot be parsed
        """
        raw_groups = self.source.fetch_posted_time(since_watermark, max_size)

        postings = []
        for raw in raw_groups:
            try:
                postings.append(TimePosting.from_dict(raw))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                group_id = raw.get("groupId") if isinstance(raw, dict) else None
                raise SourceDataError(f"Malformed time group {group_id}: {e!r}") from e

        # The source is asked for order, but never trusted with it
        postings.sort(key=lambda p: p.sequence)
        fresh = [p for p in postings if p.sequence > since_watermark]
        if len(fresh) < len(postings):
            logger.warning(
                f"Dropped {len(postings) - len(fresh)} postings at or below "
                f"watermark {since_watermark}"
            )
        fresh = fresh[:max_size]

        next_watermark = fresh[-1].sequence if fresh else since_watermark
        logger.debug(f"Fetched {len(fresh)} postings after {since_watermark}")
        return PostingBatch(postings=tuple(fresh), next_watermark=next_watermark)
