"""Shared datetime parsing and manipulation utilities."""

from __future__ import annotations

from datetime import datetime, timedelta


def local_now() -> datetime:
    """Get current datetime in local timezone."""
    return datetime.now().astimezone()


def ensure_local(dt: datetime) -> datetime:
    """Ensure datetime is timezone-aware in the local timezone."""
    return dt.astimezone()


def serialize_dt(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.astimezone()
    return value.isoformat()


def deserialize_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def next_time_of_day(
    hour: int,
    minute: int,
    weekdays: list[int] | tuple[int, ...] | None = None,
    *,
    after: datetime | None = None,
) -> datetime:
    """Next occurrence of hour:minute strictly after ``after``, restricted to weekdays (0=Mon) when given."""
    now = after or local_now()
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if not weekdays:
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate
    day_set = {d % 7 for d in weekdays}
    for offset in range(0, 8):
        attempt = candidate + timedelta(days=offset)
        if attempt <= now:
            continue
        if attempt.weekday() in day_set:
            return attempt
    # Unreachable with a non-empty day set; keep a sane value anyway.
    return candidate + timedelta(days=7)
