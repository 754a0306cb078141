"""Narrative text for Allisa time registrations."""

from datetime import tzinfo
from itertools import groupby
from typing import Optional

from .models import NARRATIVE_ONLY, SPLIT_DIVIDE_BETWEEN_TAGS, TimePosting, TimeRow

__all__ = ["format_duration", "clean_activity", "clean_description", "build_narrative"]

NO_WINDOW_TITLE = "No window title available"
_EMPTY_MARKER = "@_empty_@"


def format_duration(seconds: int) -> str:
    """Format seconds like "1h 6m 46s", leaving out zero parts.

    Examples:
        >>> format_duration(4006)
        '1h 6m 46s'
        >>> format_duration(120)
        '2m'
    """
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)

    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def clean_activity(activity: str) -> str:
    """Strip WiseTime's `@_..._@` markers from an activity name."""
    if activity.startswith("@_") and activity.endswith("_@") and len(activity) >= 4:
        return activity[2:-2]
    return activity


def clean_description(description: Optional[str]) -> str:
    if not description or not description.strip() or description == _EMPTY_MARKER:
        return NO_WINDOW_TITLE
    return description


def _hour_groups(rows: list[TimeRow], zone: tzinfo) -> list[str]:
    local_rows = sorted(
        ((row.started_at.astimezone(zone), row) for row in rows),
        key=lambda pair: pair[0],
    )
    groups = []
    for hour, members in groupby(local_rows, key=lambda pair: pair[0].hour):
        lines = [f"\n\r\n{hour:02d}:00 - {hour:02d}:59"]
        for _, row in members:
            lines.append(
                f"\n- {format_duration(row.duration_secs)}"
                f" - {clean_activity(row.activity)}"
                f" - {clean_description(row.description)}"
            )
        groups.append("".join(lines))
    return groups


def build_narrative(
    posting: TimePosting,
    zone: tzinfo,
    chargeable_secs_per_case: int,
    case_count: int,
    add_summary: bool = False,
) -> str:
    """Render the narrative shared by every registration of a posting.

    Layout: the posting description, then (unless the narrative type is
    ONLY) the time rows grouped by local hour, then (if add_summary) the
    worked and chargeable totals followed by the weighting and split notes.
    """
    parts = [posting.description]

    if posting.narrative_type != NARRATIVE_ONLY:
        parts.extend(_hour_groups(list(posting.time_rows), zone))

    if add_summary:
        parts.append(
            f"\n\r\nTotal Worked Time: {format_duration(posting.rows_duration_secs)}"
            f"\nTotal Chargeable Time: {format_duration(chargeable_secs_per_case)}"
        )
        weighting = posting.user.experience_weighting_percent
        if weighting != 100 and not posting.duration_edited:
            parts.append(
                "\n\r\nThe chargeable time has been weighed based on an "
                f"experience factor of {weighting}%."
            )
        if posting.duration_split_strategy == SPLIT_DIVIDE_BETWEEN_TAGS and case_count > 1:
            parts.append(
                f"\n\r\nThe above times have been split across {case_count} cases "
                "and are thus greater than the chargeable time in this case"
            )

    return "".join(parts)
