"""Activity log helpers -- append-only, ordered by creation.

Entries are stored in append order and never edited or removed. Display
code asks for ``newest_first``; storage never reorders.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from src.agency.pipeline.schemas import ActivityEntry, ActivityType


def new_entry(
    entry_type: ActivityType,
    description: str,
    old_value: str | None = None,
    new_value: str | None = None,
    *,
    now: datetime | None = None,
) -> ActivityEntry:
    kwargs = {}
    if now is not None:
        kwargs["timestamp"] = now
    return ActivityEntry(
        type=entry_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        **kwargs,
    )


def append(activities: Sequence[ActivityEntry], entry: ActivityEntry) -> list[ActivityEntry]:
    """Return a new list with ``entry`` at the end; the input is untouched."""
    return [*activities, entry]


def newest_first(activities: Sequence[ActivityEntry]) -> list[ActivityEntry]:
    return list(reversed(activities))


def is_extension(before: Sequence[ActivityEntry], after: Sequence[ActivityEntry]) -> bool:
    """True when ``after`` keeps every entry of ``before`` unchanged, in order."""
    if len(after) < len(before):
        return False
    return all(a == b for a, b in zip(before, after))
