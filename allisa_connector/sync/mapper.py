"""Translate WiseTime postings into Allisa time registrations."""

import logging
import math
import uuid
from zoneinfo import ZoneInfo

from ..config import DEFAULT_TAG_UPSERT_PATH, MappingSettings
from ..errors import ValidationError
from .models import (
    IDEMPOTENCY_NAMESPACE,
    SPLIT_DIVIDE_BETWEEN_TAGS,
    MappedRecord,
    Tag,
    TimePosting,
)
from .narrative import build_narrative

__all__ = ["PostingMapper", "idempotency_key_for"]

logger = logging.getLogger(__name__)

START_DATE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def idempotency_key_for(posting_id: str) -> str:
    """Deterministic idempotency key for a WiseTime posting id."""
    return str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, posting_id))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class PostingMapper:
    """Maps postings to records. Pure: no I/O, same input gives same output."""

    def __init__(
        self,
        settings: MappingSettings,
        tag_upsert_path: str = DEFAULT_TAG_UPSERT_PATH,
    ):
        """Initialize mapper.

        Args:
            settings: Time zone and narrative settings
            tag_upsert_path: WiseTime tag path of tags created for Allisa cases
        """
        self.settings = settings
        self.tag_upsert_path = tag_upsert_path
        self.zone = ZoneInfo(settings.timezone)

    def is_relevant(self, tag: Tag) -> bool:
        """Check if a tag was created by this connector."""
        return tag.path in (self.tag_upsert_path, self.tag_upsert_path.strip("/"))

    def relevant_tags(self, posting: TimePosting) -> list[Tag]:
        relevant = []
        for tag in posting.tags:
            if self.is_relevant(tag):
                relevant.append(tag)
            else:
                logger.warning(
                    f"Tag {tag.name} is not an Allisa case tag; "
                    f"no time will be posted for it (posting {posting.posting_id})"
                )
        return relevant

    def map(self, posting: TimePosting) -> MappedRecord:
        """Map one posting.

        A posting without relevant tags maps to a record with no case
        references, which has nothing to deliver.

        Raises:
            ValidationError: Posting cannot be registered in Allisa
        """
        key = idempotency_key_for(posting.posting_id)
        tags = self.relevant_tags(posting)
        if not tags:
            return MappedRecord(
                posting_id=posting.posting_id,
                sequence=posting.sequence,
                idempotency_key=key,
                case_references=(),
                user_id="",
                narrative="",
                start_date_time="",
                total_time_secs=0,
                chargeable_time_secs=0,
                activity_code="",
            )

        if not posting.time_rows:
            raise ValidationError("Cannot post time group with no time rows")

        user_id = posting.user.external_id
        if not user_id:
            raise ValidationError("External User Id is required in order to post to Allisa")
        if not user_id.isdigit():
            raise ValidationError(f"External User Id must be numeric: {user_id}")

        activity_code = self._activity_code(posting)

        divisor = len(tags) if posting.duration_split_strategy == SPLIT_DIVIDE_BETWEEN_TAGS else 1
        if posting.duration_edited:
            # Edited totals are used as-is, without experience weighting
            chargeable = posting.total_duration_secs
        else:
            chargeable = (
                posting.total_duration_secs * posting.user.experience_weighting_percent / 100
            )
        chargeable_per_case = _round_half_up(chargeable / divisor)
        actual_per_case = _round_half_up(posting.rows_duration_secs / divisor)

        try:
            started_at = min(row.started_at for row in posting.time_rows)
        except ValueError as e:
            raise ValidationError(f"Invalid time row activity hour or minute: {e}") from e
        start_date_time = started_at.astimezone(self.zone).strftime(START_DATE_TIME_FORMAT)

        narrative = build_narrative(
            posting,
            self.zone,
            chargeable_secs_per_case=chargeable_per_case,
            case_count=len(tags),
            add_summary=self.settings.add_summary_to_narrative,
        )

        return MappedRecord(
            posting_id=posting.posting_id,
            sequence=posting.sequence,
            idempotency_key=key,
            case_references=tuple(tag.name for tag in tags),
            user_id=user_id,
            narrative=narrative,
            start_date_time=start_date_time,
            total_time_secs=actual_per_case,
            chargeable_time_secs=chargeable_per_case,
            activity_code=activity_code,
        )

    def _activity_code(self, posting: TimePosting) -> str:
        codes = list(dict.fromkeys(row.activity_type_code for row in posting.time_rows))
        if len(codes) > 1:
            logger.error(
                f"All time rows within posting {posting.posting_id} should have the "
                f"same activity type code, but got: {codes}"
            )
            raise ValidationError(f"Expected only one activity type, but got {len(codes)}")
        return codes[0] or ""
