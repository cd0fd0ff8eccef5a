"""Alarm data model: authority alarms, app metadata and the wrapped alarm."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Literal

from mrsleep.datetime_utils import (
    deserialize_dt,
    ensure_local,
    local_now,
    next_time_of_day,
    serialize_dt,
)

AlarmState = Literal["scheduled", "countdown", "paused", "alerting"]
AlarmType = Literal["alarm", "timer", "custom"]
PresentationMode = Literal["alert", "countdown", "paused"]
ScheduleKind = Literal["fixed", "relative"]

ALARM_STATES: tuple[AlarmState, ...] = ("scheduled", "countdown", "paused", "alerting")
RUNNING_STATES: frozenset[str] = frozenset({"scheduled", "countdown", "paused"})

STATE_LABELS = {
    "scheduled": "Scheduled",
    "countdown": "Running",
    "paused": "Paused",
    "alerting": "Alert",
}

STATE_COLORS = {
    "scheduled": "blue",
    "countdown": "green",
    "paused": "yellow",
    "alerting": "red",
}


@dataclass(frozen=True)
class SleepPreset:
    name: str
    duration_seconds: float
    icon: str
    color: str


SLEEP_CONTEXTS: dict[str, SleepPreset] = {
    preset.name: preset
    for preset in (
        SleepPreset("Quick Nap", 20 * 60, "powersleep", "blue"),
        SleepPreset("Power Nap", 30 * 60, "bolt.circle", "orange"),
        SleepPreset("Short Sleep", 90 * 60, "moon.circle", "purple"),
        SleepPreset("Normal Sleep", 6 * 3600, "bed.double.circle", "indigo"),
        SleepPreset("Long Sleep", 8 * 3600, "moon.stars.circle", "mint"),
        SleepPreset("Deep Sleep", 9 * 3600, "zzz", "cyan"),
    )
}

WAKE_UP_REASONS: dict[str, str] = {
    "General": "alarm",
    "Work": "briefcase",
    "Workout": "figure.run",
    "Appointment": "calendar",
    "Medication": "pills",
    "Meeting": "person.3",
    "Travel": "airplane",
    "Event": "star",
}

DEFAULT_WAKE_UP_REASON = "General"


@dataclass(frozen=True)
class Schedule:
    """When a time-based alarm fires: an absolute date or a wall-clock time with optional weekly repeat."""

    kind: ScheduleKind
    date: datetime | None = None
    hour: int | None = None
    minute: int | None = None
    weekdays: tuple[int, ...] = ()

    @classmethod
    def fixed(cls, date: datetime) -> Schedule:
        return cls(kind="fixed", date=ensure_local(date))

    @classmethod
    def relative(cls, hour: int, minute: int, weekdays: list[int] | tuple[int, ...] | None = None) -> Schedule:
        return cls(kind="relative", hour=hour, minute=minute, weekdays=tuple(sorted(set(weekdays or ()))))

    @property
    def repeats(self) -> bool:
        return self.kind == "relative" and bool(self.weekdays)

    def next_fire(self, after: datetime | None = None) -> datetime | None:
        if self.kind == "fixed":
            return self.date
        if self.hour is None or self.minute is None:
            return None
        return next_time_of_day(self.hour, self.minute, self.weekdays, after=after)

    def to_dict(self) -> dict[str, Any]:
        if self.kind == "fixed":
            return {"type": "fixed", "date": serialize_dt(self.date) if self.date else None}
        return {
            "type": "relative",
            "hour": self.hour,
            "minute": self.minute,
            "weekdays": list(self.weekdays),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> Schedule | None:
        if not payload:
            return None
        kind = payload.get("type")
        if kind == "fixed":
            date = deserialize_dt(payload.get("date"))
            if date is None:
                raise ValueError("Fixed schedule is missing a valid date")
            return cls(kind="fixed", date=date)
        if kind == "relative":
            return cls.relative(int(payload["hour"]), int(payload["minute"]), payload.get("weekdays") or ())
        raise ValueError(f"Unknown schedule type: {kind!r}")


@dataclass(frozen=True)
class CountdownDuration:
    pre_alert: float | None = None
    post_alert: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"pre_alert": self.pre_alert, "post_alert": self.post_alert}

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> CountdownDuration | None:
        if not payload:
            return None
        pre = payload.get("pre_alert")
        post = payload.get("post_alert")
        return cls(
            pre_alert=float(pre) if pre is not None else None,
            post_alert=float(post) if post is not None else None,
        )


@dataclass(frozen=True)
class Alarm:
    """An alarm as the authority reports it. The core never mutates these."""

    id: str
    state: AlarmState
    schedule: Schedule | None = None
    countdown: CountdownDuration | None = None

    def with_state(self, state: AlarmState) -> Alarm:
        return replace(self, state=state)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state,
            "schedule": self.schedule.to_dict() if self.schedule else None,
            "countdown": self.countdown.to_dict() if self.countdown else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Alarm:
        state = payload.get("state")
        if state not in ALARM_STATES:
            raise ValueError(f"Unknown alarm state: {state!r}")
        alarm_id = payload.get("id")
        if not alarm_id:
            raise ValueError("Alarm payload is missing an id")
        return cls(
            id=str(alarm_id),
            state=state,
            schedule=Schedule.from_dict(payload.get("schedule")),
            countdown=CountdownDuration.from_dict(payload.get("countdown")),
        )


@dataclass(frozen=True)
class AlarmMetadata:
    created_at: datetime
    sleep_context: str | None = None
    wake_up_reason: str = DEFAULT_WAKE_UP_REASON

    @classmethod
    def create(
        cls,
        sleep_context: str | None = None,
        wake_up_reason: str = DEFAULT_WAKE_UP_REASON,
        *,
        now: datetime | None = None,
    ) -> AlarmMetadata:
        if sleep_context is not None and sleep_context not in SLEEP_CONTEXTS:
            raise ValueError(f"Unknown sleep context: {sleep_context!r}")
        if wake_up_reason not in WAKE_UP_REASONS:
            raise ValueError(f"Unknown wake-up reason: {wake_up_reason!r}")
        return cls(created_at=now or local_now(), sleep_context=sleep_context, wake_up_reason=wake_up_reason)

    @property
    def preset(self) -> SleepPreset | None:
        if self.sleep_context is None:
            return None
        return SLEEP_CONTEXTS.get(self.sleep_context)

    @property
    def sleep_duration(self) -> float | None:
        preset = self.preset
        return preset.duration_seconds if preset else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": serialize_dt(self.created_at),
            "sleep_context": self.sleep_context,
            "wake_up_reason": self.wake_up_reason,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> AlarmMetadata:
        if not payload:
            return cls(created_at=local_now())
        # Tolerate presets and reasons written by other releases.
        context = payload.get("sleep_context")
        if context not in SLEEP_CONTEXTS:
            context = None
        reason = payload.get("wake_up_reason")
        if reason not in WAKE_UP_REASONS:
            reason = DEFAULT_WAKE_UP_REASON
        return cls(
            created_at=deserialize_dt(payload.get("created_at")) or local_now(),
            sleep_context=context,
            wake_up_reason=reason,
        )


@dataclass(frozen=True)
class AlarmConfiguration:
    """Everything the authority needs to schedule one alarm."""

    title: str
    icon: str
    metadata: AlarmMetadata
    schedule: Schedule | None = None
    countdown: CountdownDuration | None = None
    stop_action: str = "stop"
    secondary_action: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "icon": self.icon,
            "metadata": self.metadata.to_dict(),
            "schedule": self.schedule.to_dict() if self.schedule else None,
            "countdown": self.countdown.to_dict() if self.countdown else None,
            "stop_action": self.stop_action,
            "secondary_action": self.secondary_action,
        }


@dataclass
class PresentationState:
    mode: PresentationMode | None = None
    start_date: datetime | None = None
    previously_elapsed: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "start_date": serialize_dt(self.start_date) if self.start_date else None,
            "previously_elapsed": self.previously_elapsed,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> PresentationState | None:
        if not payload:
            return None
        mode = payload.get("mode")
        if mode not in {"alert", "countdown", "paused"}:
            mode = None
        return cls(
            mode=mode,
            start_date=deserialize_dt(payload.get("start_date")),
            previously_elapsed=float(payload.get("previously_elapsed") or 0.0),
        )


def _next_presentation_mode(
    old_state: AlarmState, new_state: AlarmState, current: PresentationMode | None
) -> PresentationMode | None:
    if new_state == "alerting":
        return "alert"
    if old_state in {"scheduled", "paused"} and new_state == "countdown":
        return "countdown"
    if old_state == "countdown" and new_state == "paused":
        return "paused"
    return current


@dataclass
class WrappedAlarm:
    """An authority alarm paired with the app's metadata and presentation state."""

    alarm: Alarm
    metadata: AlarmMetadata
    title: str | None = None
    icon: str | None = None
    presentation: PresentationState | None = field(default=None)

    @property
    def id(self) -> str:
        return self.alarm.id

    @property
    def state(self) -> AlarmState:
        return self.alarm.state

    @property
    def alarm_type(self) -> AlarmType:
        has_countdown = self.alarm.countdown is not None
        has_schedule = self.alarm.schedule is not None
        if has_schedule and not has_countdown:
            return "alarm"
        if has_countdown and not has_schedule:
            return "timer"
        return "custom"

    @property
    def is_timer(self) -> bool:
        return self.alarm.schedule is None and self.alarm.countdown is not None

    @property
    def is_scheduled(self) -> bool:
        return self.alarm.schedule is not None

    @property
    def is_one_shot(self) -> bool:
        schedule = self.alarm.schedule
        if schedule is None:
            return True
        return not schedule.repeats

    @property
    def timer_duration(self) -> float | None:
        if self.alarm.countdown is None:
            return None
        return self.alarm.countdown.pre_alert

    @property
    def scheduled_weekdays(self) -> tuple[int, ...] | None:
        schedule = self.alarm.schedule
        if schedule is None or not schedule.repeats:
            return None
        return schedule.weekdays

    def fire_date(self, now: datetime | None = None) -> datetime | None:
        if self.alarm.schedule is None:
            return None
        return self.alarm.schedule.next_fire(after=now)

    def start_date(self) -> datetime | None:
        if self.alarm.countdown is None or self.state not in {"countdown", "paused"}:
            return None
        return self.presentation.start_date if self.presentation else None

    def remaining_countdown(self, now: datetime | None = None) -> float | None:
        total = self.timer_duration
        if total is None:
            return None
        elapsed = self.presentation.previously_elapsed if self.presentation else 0.0
        start = self.start_date()
        if self.state == "countdown" and start is not None:
            elapsed += ((now or local_now()) - start).total_seconds()
        return max(0.0, total - elapsed)

    @property
    def display_title(self) -> str:
        if self.metadata.sleep_context:
            return self.metadata.sleep_context
        return self.title or "Alarm"

    @property
    def display_subtitle(self) -> str:
        return self.metadata.wake_up_reason

    @property
    def display_icon(self) -> str:
        preset = self.metadata.preset
        if preset:
            return preset.icon
        return WAKE_UP_REASONS.get(self.metadata.wake_up_reason, "alarm")

    @property
    def state_label(self) -> str:
        return STATE_LABELS.get(self.state, "Unknown")

    @property
    def state_color(self) -> str:
        return STATE_COLORS.get(self.state, "gray")

    def update_presentation_state(self, old_alarm: Alarm, *, now: datetime | None = None) -> None:
        """Fold the old -> new authority state transition into the presentation state."""
        now = now or local_now()
        old_state = old_alarm.state
        new_state = self.alarm.state
        current = self.presentation.mode if self.presentation else None
        new_mode = _next_presentation_mode(old_state, new_state, current)
        if new_mode != current:
            if self.presentation is None:
                self.presentation = PresentationState(mode=new_mode)
            else:
                self.presentation.mode = new_mode
            if new_mode == "countdown" and self.presentation.start_date is None:
                self.presentation.start_date = now
                self.presentation.previously_elapsed = 0.0
        if self.presentation is None:
            return
        if old_state == "countdown" and new_state == "paused" and self.presentation.start_date:
            self.presentation.previously_elapsed += max(
                0.0, (now - self.presentation.start_date).total_seconds()
            )
        if old_state == "paused" and new_state == "countdown":
            self.presentation.start_date = now

    def replacing_alarm(self, alarm: Alarm, *, now: datetime | None = None) -> WrappedAlarm:
        """Copy of this wrapper holding ``alarm``, with presentation state advanced."""
        presentation = replace(self.presentation) if self.presentation else None
        updated = WrappedAlarm(
            alarm=alarm,
            metadata=self.metadata,
            title=self.title,
            icon=self.icon,
            presentation=presentation,
        )
        if alarm != self.alarm:
            updated.update_presentation_state(self.alarm, now=now)
        return updated

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "alarm": self.alarm.to_dict(),
            "metadata": self.metadata.to_dict(),
            "title": self.title,
            "icon": self.icon,
            "presentation": self.presentation.to_dict() if self.presentation else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WrappedAlarm:
        return cls(
            alarm=Alarm.from_dict(payload["alarm"]),
            metadata=AlarmMetadata.from_dict(payload.get("metadata")),
            title=payload.get("title"),
            icon=payload.get("icon"),
            presentation=PresentationState.from_dict(payload.get("presentation")),
        )

    def to_public_dict(self, now: datetime | None = None) -> dict[str, Any]:
        fire = self.fire_date(now)
        return {
            "id": self.id,
            "type": self.alarm_type,
            "state": self.state,
            "state_label": self.state_label,
            "state_color": self.state_color,
            "title": self.display_title,
            "subtitle": self.display_subtitle,
            "icon": self.display_icon,
            "fire_date": serialize_dt(fire) if fire else None,
            "timer_duration": self.timer_duration,
            "remaining": self.remaining_countdown(now),
            "is_one_shot": self.is_one_shot,
            "weekdays": list(self.scheduled_weekdays or ()),
            "sleep_context": self.metadata.sleep_context,
            "wake_up_reason": self.metadata.wake_up_reason,
            "created_at": serialize_dt(self.metadata.created_at),
        }


def default_wrapped(alarm: Alarm, *, now: datetime | None = None) -> WrappedAlarm:
    """Wrap an alarm the app has no metadata for.

    A running countdown is assumed to have started when it was first seen.
    """
    now = now or local_now()
    presentation = None
    if alarm.state == "countdown":
        presentation = PresentationState(mode="countdown", start_date=now)
    return WrappedAlarm(alarm=alarm, metadata=AlarmMetadata(created_at=now), presentation=presentation)


def fixed_in(seconds: float, *, now: datetime | None = None) -> Schedule:
    return Schedule.fixed((now or local_now()) + timedelta(seconds=seconds))
