"""Protocol types for the sync pipeline's collaborators.

Defines the interfaces that the poller, dispatcher, engine and tag sync
require, so tests can pass simple fakes.
"""

from typing import Optional, Protocol, runtime_checkable

from .models import AllisaCase, MappedRecord, SyncState


@runtime_checkable
class PostingSourceProtocol(Protocol):
    """Interface for reading posted time from WiseTime."""

    def fetch_posted_time(self, since: int, limit: int) -> list[dict]: ...


@runtime_checkable
class TagTargetProtocol(Protocol):
    """Interface for upserting WiseTime tags."""

    def upsert_tags(self, tags: list[dict]) -> None: ...


@runtime_checkable
class AllisaClientProtocol(Protocol):
    """Interface for registering time in Allisa."""

    def find_case(self, tag_name: str) -> Optional[AllisaCase]: ...

    def get_new_cases(
        self, last_case_id: int, page: int, batch_size: int
    ) -> list[AllisaCase]: ...

    def post_time(
        self, case_id: int, record: MappedRecord, idempotency_key: str
    ) -> dict: ...

    def can_connect(self) -> bool: ...


@runtime_checkable
class StateStoreProtocol(Protocol):
    """Interface for durable connector state."""

    def get_watermark(self, connector_id: str) -> Optional[int]: ...

    def set_watermark(self, connector_id: str, watermark: int) -> None: ...

    def load_state(self, connector_id: str) -> SyncState: ...

    def get_int(self, key: str) -> Optional[int]: ...

    def put_int(self, key: str, value: int) -> None: ...

    def is_delivered(self, delivery_key: str) -> bool: ...

    def mark_delivered(
        self, delivery_key: str, posting_id: str, case_reference: str
    ) -> None: ...

    def record_failed_attempt(
        self, idempotency_key: str, posting_id: str, error: str
    ) -> int: ...

    def clear_attempts(self, idempotency_key: str) -> None: ...

    def add_dead_letter(
        self, posting_id: str, sequence: int, reason: str, payload: dict
    ) -> None: ...
