"""Sync engine - orchestrates posted time from WiseTime to Allisa."""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

from ..errors import SourceDataError, SourceUnavailable, ValidationError
from .dispatcher import Dispatcher
from .mapper import PostingMapper
from .models import BatchStatus, DeliveryStatus, MappedRecord, SyncState
from .poller import Poller
from .protocols import StateStoreProtocol

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Result of one sync cycle."""

    state: SyncState
    status: Optional[BatchStatus] = None
    skipped: bool = False
    postings_fetched: int = 0
    records_mapped: int = 0
    accepted: int = 0
    rejected_permanent: int = 0
    rejected_retryable: int = 0
    dead_lettered: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0 and not self.skipped

    @property
    def committed(self) -> bool:
        return self.status is BatchStatus.COMMITTED


class SyncEngine:
    """Core engine that runs poll -> map -> dispatch -> commit cycles.

    The engine owns the watermark: it is read from and written to the
    store only here, and only moves forward once every record of a batch
    has reached a terminal outcome.
    """

    def __init__(
        self,
        poller: Poller,
        mapper: PostingMapper,
        dispatcher: Dispatcher,
        store: StateStoreProtocol,
        batch_size: int = 100,
        cycle_timeout: float = 300,
    ):
        self.poller = poller
        self.mapper = mapper
        self.dispatcher = dispatcher
        self.store = store
        self.batch_size = batch_size
        self.cycle_timeout = cycle_timeout
        self._cycle_lock = threading.Lock()

    def run_cycle(self, state: SyncState) -> CycleReport:
        """Run one cycle.

        Returns a skipped report if another cycle is still running.

        Raises:
            StateStoreError: Durable state could not be read or written
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous sync cycle still running, skipping this one")
            return CycleReport(state=state, skipped=True)
        try:
            return self._run_cycle(state)
        finally:
            self._cycle_lock.release()

    def _run_cycle(self, state: SyncState) -> CycleReport:
        deadline = time.monotonic() + self.cycle_timeout

        try:
            batch = self.poller.fetch_batch(state.watermark, self.batch_size)
        except SourceUnavailable as e:
            logger.warning(f"WiseTime unavailable, will retry next cycle: {e}")
            return CycleReport(state=state.unchanged(), errors=[str(e)])
        except SourceDataError as e:
            logger.error(f"Skipping batch after {state.watermark}, malformed source data: {e}")
            return CycleReport(state=state.unchanged(), errors=[str(e)])

        report = CycleReport(
            state=state, status=BatchStatus.FETCHED, postings_fetched=len(batch)
        )
        if not batch.postings:
            report.status = BatchStatus.COMMITTED
            report.state = state.unchanged()
            return report

        logger.info(
            f"Fetched {len(batch)} postings after watermark {state.watermark} "
            f"(up to {batch.next_watermark})"
        )

        records: list[MappedRecord] = []
        for posting in batch.postings:
            try:
                records.append(self.mapper.map(posting))
            except ValidationError as e:
                logger.warning(f"Posting {posting.posting_id} failed validation: {e}")
                self.store.add_dead_letter(
                    posting.posting_id, posting.sequence, str(e), asdict(posting)
                )
                report.dead_lettered += 1
        report.records_mapped = len(records)
        report.status = BatchStatus.MAPPED

        report.status = BatchStatus.DISPATCHING
        outcomes = self.dispatcher.dispatch_batch(records, deadline)

        for record, outcome in zip(records, outcomes):
            if outcome.status is DeliveryStatus.ACCEPTED:
                report.accepted += 1
            elif outcome.status is DeliveryStatus.REJECTED_PERMANENT:
                report.rejected_permanent += 1
                self.store.add_dead_letter(
                    record.posting_id, record.sequence, outcome.message, asdict(record)
                )
                report.dead_lettered += 1
            else:
                report.rejected_retryable += 1
                report.errors.append(f"{record.posting_id}: {outcome.message}")

        if report.rejected_retryable:
            report.status = BatchStatus.PARTIALLY_FAILED
            report.state = state.unchanged()
            logger.warning(
                f"{report.rejected_retryable} of {len(records)} records not delivered; "
                f"watermark stays at {state.watermark}"
            )
            return report

        self.store.set_watermark(state.connector_id, batch.next_watermark)
        report.status = BatchStatus.COMMITTED
        report.state = state.advanced_to(batch.next_watermark)
        logger.info(
            f"Committed watermark {batch.next_watermark}: {report.accepted} accepted, "
            f"{report.dead_lettered} dead-lettered"
        )
        return report
