"""Read-only projections over the running alarms, recomputed on every read."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from mrsleep.datetime_utils import local_now

from .models import AlarmType, WrappedAlarm


def _of_type(alarms: Iterable[WrappedAlarm], alarm_type: AlarmType) -> list[WrappedAlarm]:
    return [alarm for alarm in alarms if alarm.alarm_type == alarm_type]


def traditional_alarms(alarms: Iterable[WrappedAlarm], *, now: datetime | None = None) -> list[WrappedAlarm]:
    """Schedule-only alarms, soonest first; alarms without a fire date sort last."""
    reference = now or local_now()
    selected = _of_type(alarms, "alarm")
    fire_dates = {alarm.id: alarm.fire_date(reference) for alarm in selected}

    def _key(alarm: WrappedAlarm) -> tuple[bool, float]:
        fire = fire_dates[alarm.id]
        return (fire is None, fire.timestamp() if fire else 0.0)

    return sorted(selected, key=_key)


def timers(alarms: Iterable[WrappedAlarm]) -> list[WrappedAlarm]:
    """Countdown-only alarms, newest first."""
    return sorted(_of_type(alarms, "timer"), key=lambda alarm: alarm.metadata.created_at, reverse=True)


def custom_alarms(alarms: Iterable[WrappedAlarm]) -> list[WrappedAlarm]:
    """Alarms with both (or neither) a schedule and a countdown, newest first."""
    return sorted(_of_type(alarms, "custom"), key=lambda alarm: alarm.metadata.created_at, reverse=True)


def has_upcoming_alarms(alarms: Iterable[WrappedAlarm]) -> bool:
    return any(True for _ in alarms)
