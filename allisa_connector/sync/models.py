"""Data model shared by the poller, mapper, dispatcher and stores."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

__all__ = [
    "NARRATIVE_ONLY",
    "NARRATIVE_WITH_ROW_DESCRIPTIONS",
    "SPLIT_DIVIDE_BETWEEN_TAGS",
    "SPLIT_WHOLE_DURATION_TO_EACH_TAG",
    "IDEMPOTENCY_NAMESPACE",
    "Tag",
    "TimeRow",
    "User",
    "TimePosting",
    "PostingBatch",
    "MappedRecord",
    "DeliveryStatus",
    "DeliveryOutcome",
    "BatchStatus",
    "SyncState",
    "AllisaCase",
]

# WiseTime narrative types
NARRATIVE_ONLY = "ONLY"
NARRATIVE_WITH_ROW_DESCRIPTIONS = "AND_TIME_ROW_ACTIVITY_DESCRIPTIONS"

# WiseTime duration split strategies
SPLIT_DIVIDE_BETWEEN_TAGS = "DIVIDE_BETWEEN_TAGS"
SPLIT_WHOLE_DURATION_TO_EACH_TAG = "WHOLE_DURATION_TO_EACH_TAG"

# Fixed namespace so idempotency keys survive restarts and redeploys
IDEMPOTENCY_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "https://wisetime.com/connector/allisa")


@dataclass(frozen=True)
class Tag:
    """A WiseTime tag attached to a posting."""

    name: str
    path: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Tag":
        return cls(
            name=data["name"],
            path=data.get("path") or "",
            description=data.get("description") or "",
        )


@dataclass(frozen=True)
class TimeRow:
    """One observed activity inside a posting."""

    activity: str
    description: str
    activity_hour: int  # yyyyMMddHH, UTC
    first_observed_in_hour: int  # minute
    duration_secs: int
    activity_type_code: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "TimeRow":
        return cls(
            activity=data.get("activity") or "",
            description=data.get("description") or "",
            activity_hour=int(data["activityHour"]),
            first_observed_in_hour=int(data.get("firstObservedInHour", 0)),
            duration_secs=int(data["durationSecs"]),
            activity_type_code=data.get("activityTypeCode"),
        )

    @property
    def started_at(self) -> datetime:
        """Start of this row as an aware UTC datetime."""
        hour = datetime.strptime(str(self.activity_hour), "%Y%m%d%H")
        return hour.replace(minute=self.first_observed_in_hour, tzinfo=timezone.utc)


@dataclass(frozen=True)
class User:
    """The WiseTime user who posted the time."""

    external_id: Optional[str] = None
    name: str = ""
    experience_weighting_percent: int = 100

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        external_id = data.get("externalId")
        return cls(
            external_id=str(external_id) if external_id is not None else None,
            name=data.get("name") or "",
            experience_weighting_percent=int(data.get("experienceWeightingPercent", 100)),
        )


@dataclass(frozen=True)
class TimePosting:
    """A WiseTime time group, as fetched from the posted-time API."""

    posting_id: str
    sequence: int
    total_duration_secs: int
    user: User
    tags: tuple[Tag, ...] = ()
    time_rows: tuple[TimeRow, ...] = ()
    description: str = ""
    submitted_at: Optional[datetime] = None
    narrative_type: str = NARRATIVE_WITH_ROW_DESCRIPTIONS
    duration_split_strategy: str = SPLIT_DIVIDE_BETWEEN_TAGS

    @classmethod
    def from_dict(cls, data: dict) -> "TimePosting":
        """Create from a WiseTime API time group.

        Raises KeyError, TypeError or ValueError on malformed input.
        """
        submitted_at = None
        if data.get("submittedAt"):
            submitted_at = datetime.fromisoformat(data["submittedAt"].replace("Z", "+00:00"))
        return cls(
            posting_id=str(data["groupId"]),
            sequence=int(data["sequence"]),
            total_duration_secs=int(data["totalDurationSecs"]),
            user=User.from_dict(data.get("user") or {}),
            tags=tuple(Tag.from_dict(t) for t in data.get("tags") or []),
            time_rows=tuple(TimeRow.from_dict(r) for r in data.get("timeRows") or []),
            description=data.get("description") or "",
            submitted_at=submitted_at,
            narrative_type=data.get("narrativeType") or NARRATIVE_WITH_ROW_DESCRIPTIONS,
            duration_split_strategy=data.get("durationSplitStrategy") or SPLIT_DIVIDE_BETWEEN_TAGS,
        )

    @property
    def rows_duration_secs(self) -> int:
        return sum(row.duration_secs for row in self.time_rows)

    @property
    def duration_edited(self) -> bool:
        """True if the user changed the total away from the sum of the rows."""
        return self.total_duration_secs != self.rows_duration_secs


@dataclass(frozen=True)
class PostingBatch:
    """Result of one poll: postings ordered by sequence, and the next watermark."""

    postings: tuple[TimePosting, ...]
    next_watermark: int

    def __len__(self) -> int:
        return len(self.postings)


@dataclass(frozen=True)
class MappedRecord:
    """Allisa time registration(s) for one posting.

    One registration is created per case reference, all sharing the same
    form fields.
    """

    posting_id: str
    sequence: int
    idempotency_key: str
    case_references: tuple[str, ...]
    user_id: str
    narrative: str
    start_date_time: str
    total_time_secs: int
    chargeable_time_secs: int
    activity_code: str

    def delivery_key(self, case_reference: str) -> str:
        """Deterministic key for the registration against one case."""
        name = f"{self.idempotency_key}/{case_reference.lower()}"
        return str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, name))

    def to_form(self, case_id: int, field_mapping: dict[str, str]) -> dict[str, str]:
        """Build the Allisa form payload using the configured field names."""
        values = {
            "pid": str(case_id),
            "userId": self.user_id,
            "narrative": self.narrative,
            "startDateTime": self.start_date_time,
            "totalTimeSecs": str(self.total_time_secs),
            "chargeableTimeSecs": str(self.chargeable_time_secs),
            "activityCode": self.activity_code,
        }
        return {field_mapping[key]: value for key, value in values.items()}


class DeliveryStatus(Enum):
    ACCEPTED = "accepted"
    REJECTED_PERMANENT = "rejected_permanent"
    REJECTED_RETRYABLE = "rejected_retryable"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Per-record result of a delivery attempt."""

    status: DeliveryStatus
    message: str = ""

    @classmethod
    def accepted(cls, message: str = "") -> "DeliveryOutcome":
        return cls(DeliveryStatus.ACCEPTED, message)

    @classmethod
    def permanent(cls, message: str) -> "DeliveryOutcome":
        return cls(DeliveryStatus.REJECTED_PERMANENT, message)

    @classmethod
    def retryable(cls, message: str) -> "DeliveryOutcome":
        return cls(DeliveryStatus.REJECTED_RETRYABLE, message)

    @property
    def is_terminal(self) -> bool:
        return self.status is not DeliveryStatus.REJECTED_RETRYABLE


class BatchStatus(Enum):
    FETCHED = "fetched"
    MAPPED = "mapped"
    DISPATCHING = "dispatching"
    COMMITTED = "committed"
    PARTIALLY_FAILED = "partially_failed"


@dataclass(frozen=True)
class SyncState:
    """Engine state passed into and returned from each cycle."""

    connector_id: str
    watermark: int = 0
    cycles: int = 0

    def advanced_to(self, watermark: int) -> "SyncState":
        return SyncState(self.connector_id, watermark, self.cycles + 1)

    def unchanged(self) -> "SyncState":
        return SyncState(self.connector_id, self.watermark, self.cycles + 1)


@dataclass(frozen=True)
class AllisaCase:
    """An Allisa case, which becomes a WiseTime tag."""

    case_id: int
    case_reference: str
    case_description: str = ""
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: dict) -> "AllisaCase":
        """Create from an Allisa list row (canonical or raw column names)."""
        case_id = data["caseId"] if "caseId" in data else data["ID"]
        reference = data.get("caseReference", data.get("az"))
        description = data.get("caseDescription", data.get("prname"))
        return cls(
            case_id=int(case_id),
            case_reference=reference or "",
            case_description=description or "",
            raw=data,
        )

    def to_tag(self, tag_upsert_path: str, url_prefix: str) -> dict:
        """WiseTime tag upsert payload for this case."""
        return {
            "name": self.case_reference,
            "description": self.case_description,
            "path": tag_upsert_path,
            "url": f"{url_prefix}{self.case_id}",
        }
