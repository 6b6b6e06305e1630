from __future__ import annotations

import math
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def seconds_until(moment: datetime, now: datetime) -> int:
    """Whole seconds from *now* until *moment*, never less than one."""
    remaining = (as_utc(moment) - as_utc(now)).total_seconds()
    return max(1, math.ceil(remaining))
