"""Deliver mapped records to Allisa."""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Optional, Sequence, TypeVar

from ..errors import StateStoreError, TargetPermanent, TargetRetryable
from .models import DeliveryOutcome, DeliveryStatus, MappedRecord
from .protocols import AllisaClientProtocol, StateStoreProtocol
from .retry import RetryConfig, RetryExhausted, retry_with_backoff

__all__ = ["Dispatcher"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOTHING_TO_POST = "Time group has no tags. There is nothing to post to Allisa."
DEADLINE_REACHED = "Delivery did not finish before the cycle deadline"


class Dispatcher:
    """Sends records to Allisa with bounded parallelism and idempotent delivery.

    Each case reference of a record is one registration. Accepted
    registrations are written to the store's delivery ledger and are never
    posted again, so sending the same record twice is safe.
    """

    def __init__(
        self,
        client: AllisaClientProtocol,
        store: StateStoreProtocol,
        retry_config: Optional[RetryConfig] = None,
        workers: int = 4,
        max_delivery_attempts: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize dispatcher.

        Args:
            client: Allisa client
            store: Delivery ledger and attempt counters
            retry_config: In-cycle retry policy for retryable failures
            workers: Maximum concurrent deliveries
            max_delivery_attempts: Failed cycles before a record is rejected permanently
            sleep: Sleep function used between retries (injectable for tests)
        """
        self.client = client
        self.store = store
        self.retry_config = retry_config or RetryConfig()
        self.workers = workers
        self.max_delivery_attempts = max_delivery_attempts
        self._sleep = sleep

    def send(self, record: MappedRecord, deadline: Optional[float] = None) -> DeliveryOutcome:
        """Deliver one record.

        Args:
            record: Record to deliver
            deadline: Optional time.monotonic() value bounding retries

        Returns:
            Outcome for the record as a whole
        """
        return self._settle(record, self._deliver(record, deadline))

    def dispatch_batch(
        self, records: Sequence[MappedRecord], deadline: Optional[float] = None
    ) -> list[DeliveryOutcome]:
        """Deliver records concurrently.

        Records still in flight when the deadline passes are reported as
        retryable and pending work is cancelled.

        Returns:
            One outcome per record, in input order
        """
        if not records:
            return []

        executor = ThreadPoolExecutor(
            max_workers=max(1, min(self.workers, len(records))),
            thread_name_prefix="allisa-dispatch",
        )
        try:
            futures: list[Future] = [
                executor.submit(self._deliver, record, deadline) for record in records
            ]
            timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
            done, not_done = wait(futures, timeout=timeout)
            if not_done:
                logger.warning(
                    f"Cycle deadline reached with {len(not_done)} deliveries unfinished"
                )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        outcomes = []
        for record, future in zip(records, futures):
            if future not in done:
                outcome = DeliveryOutcome.retryable(DEADLINE_REACHED)
            elif future.exception() is not None:
                error = future.exception()
                if isinstance(error, StateStoreError):
                    raise error
                logger.warning(
                    f"Failed to save posted time {record.posting_id} in Allisa: {error!r}"
                )
                outcome = DeliveryOutcome.retryable("There was an error posting time to Allisa")
            else:
                outcome = future.result()
            outcomes.append(self._settle(record, outcome))
        return outcomes

    def _deliver(self, record: MappedRecord, deadline: Optional[float]) -> DeliveryOutcome:
        if not record.case_references:
            return DeliveryOutcome.accepted(NOTHING_TO_POST)

        try:
            for case_reference in record.case_references:
                if deadline is not None and time.monotonic() >= deadline:
                    logger.warning(
                        f"Cycle deadline reached before posting {record.posting_id} "
                        f"to case {case_reference}"
                    )
                    return DeliveryOutcome.retryable(DEADLINE_REACHED)
                self._deliver_to_case(record, case_reference, deadline)
        except TargetPermanent as e:
            logger.warning(f"Can't post time to Allisa: {e}")
            return DeliveryOutcome.permanent(str(e))
        except RetryExhausted as e:
            logger.warning(
                f"Posting {record.posting_id} not delivered after {e.attempts} attempts: "
                f"{e.last_error}"
            )
            return DeliveryOutcome.retryable(str(e.last_error or e))

        return DeliveryOutcome.accepted()

    def _deliver_to_case(
        self, record: MappedRecord, case_reference: str, deadline: Optional[float]
    ) -> None:
        delivery_key = record.delivery_key(case_reference)
        if self.store.is_delivered(delivery_key):
            logger.info(
                f"Posting {record.posting_id} already registered on case {case_reference}"
            )
            return

        case = self._retry(lambda: self.client.find_case(case_reference), deadline)
        if case is None:
            raise TargetPermanent(f"Can't find Allisa case for tag {case_reference}")

        self._retry(lambda: self.client.post_time(case.case_id, record, delivery_key), deadline)
        self.store.mark_delivered(delivery_key, record.posting_id, case_reference)
        logger.info(f"Posted time to Allisa case {case.case_id} on behalf of {record.user_id}")

    def _retry(self, func: Callable[[], T], deadline: Optional[float]) -> T:
        return retry_with_backoff(
            func,
            config=self.retry_config,
            retryable_exceptions=(TargetRetryable,),
            deadline=deadline,
            sleep=self._sleep,
        )

    def _settle(self, record: MappedRecord, outcome: DeliveryOutcome) -> DeliveryOutcome:
        """Track failed cycles; escalate a record that keeps failing."""
        if outcome.status is DeliveryStatus.ACCEPTED:
            self.store.clear_attempts(record.idempotency_key)
            return outcome
        if outcome.status is DeliveryStatus.REJECTED_PERMANENT:
            return outcome

        attempts = self.store.record_failed_attempt(
            record.idempotency_key, record.posting_id, outcome.message
        )
        if attempts >= self.max_delivery_attempts:
            logger.error(
                f"Posting {record.posting_id} failed in {attempts} cycles, giving up: "
                f"{outcome.message}"
            )
            return DeliveryOutcome.permanent(
                f"Gave up after {attempts} failed delivery cycles: {outcome.message}"
            )
        return outcome
