"""Alarm and timer scheduling on top of an external alarm authority.

``AlarmManager`` is the single owner of the running/recent collections. Two
sources mutate them: user-initiated scheduling calls and reconciliation
passes driven by the authority's update stream. Both go through one
``asyncio.Lock`` and every mutation is written through to the store.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from mrsleep.datetime_utils import local_now, serialize_dt
from mrsleep.utils import await_with_timeout

from . import views
from .authority import AlarmNotFoundError, AuthorityCapabilities
from .authorization import AuthorizationGate
from .config import DEFAULT_RECENT_LIMIT
from .errors import (
    AlarmError,
    AuthorityUnavailableError,
    InvalidConfigurationError,
    NotAuthorizedError,
    ScheduleInPastError,
    SchedulingFailedError,
)
from .models import (
    SLEEP_CONTEXTS,
    Alarm,
    AlarmConfiguration,
    AlarmMetadata,
    CountdownDuration,
    PresentationState,
    Schedule,
    WrappedAlarm,
)
from .reconcile import ReconcileResult, reconcile, trim_recent
from .store import AlarmStore

StateCallback = Callable[[dict[str, Any]], None]

LOGGER = logging.getLogger("mrsleep.alarms.manager")

SNOOZE_MINUTES = 9


def _valid_seconds(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and value > 0


class AlarmManager:
    """Schedule alarms through the authority and keep local state consistent with it."""

    def __init__(
        self,
        *,
        authority: Any | None,
        store: AlarmStore,
        on_state_changed: StateCallback | None = None,
        recent_limit: int | None = DEFAULT_RECENT_LIMIT,
        authority_timeout: float | None = 10.0,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self._authority = authority
        self._store = store
        self._state_cb = on_state_changed
        self._recent_limit = recent_limit
        self._timeout = authority_timeout
        self._clock = clock
        self._running: list[WrappedAlarm] = []
        self._recent: list[WrappedAlarm] = []
        self._lock = asyncio.Lock()
        self._observe_lock = asyncio.Lock()
        self._observer_task: asyncio.Task | None = None
        self._auth_task: asyncio.Task | None = None
        self._started = False
        self._last_error: AlarmError | None = None
        self.capabilities = (
            AuthorityCapabilities.detect(authority) if authority is not None else AuthorityCapabilities()
        )
        self.gate = AuthorizationGate(authority, on_authorized=self._start_observing, on_error=self._set_error)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        running, recent = self._store.load()
        running_ids = {alarm.id for alarm in running}
        self._running = running
        self._recent = trim_recent([alarm for alarm in recent if alarm.id not in running_ids], self._recent_limit)
        self._started = True
        LOGGER.info("Loaded %s running and %s recent alarms", len(self._running), len(self._recent))
        if self._authority is None:
            LOGGER.warning("No alarm authority available; alarm scheduling is disabled")
            self._last_error = AuthorityUnavailableError()
            self._publish_state()
            return
        if self.capabilities.authorization_updates:
            self._auth_task = asyncio.create_task(self._observe_authorization())
        if self.gate.is_authorized():
            await self._start_observing()
        else:
            LOGGER.info("Alarm permission not granted yet; deferring authority sync")
        self._publish_state()

    async def stop(self) -> None:
        tasks = [task for task in (self._observer_task, self._auth_task) if task]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._observer_task = None
        self._auth_task = None
        self._started = False

    @property
    def is_available(self) -> bool:
        return self._authority is not None

    @property
    def is_observing(self) -> bool:
        return self._observer_task is not None and not self._observer_task.done()

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def running_alarms(self) -> list[WrappedAlarm]:
        return list(self._running)

    @property
    def recent_alarms(self) -> list[WrappedAlarm]:
        return list(self._recent)

    @property
    def running_traditional_alarms(self) -> list[WrappedAlarm]:
        return views.traditional_alarms(self._running, now=self._clock())

    @property
    def running_timers(self) -> list[WrappedAlarm]:
        return views.timers(self._running)

    @property
    def running_custom_alarms(self) -> list[WrappedAlarm]:
        return views.custom_alarms(self._running)

    @property
    def has_upcoming_alarms(self) -> bool:
        return views.has_upcoming_alarms(self._running)

    @property
    def last_error(self) -> AlarmError | None:
        return self._last_error

    @property
    def show_error(self) -> bool:
        return self._last_error is not None

    @property
    def needs_settings_prompt(self) -> bool:
        """Permission was denied; the UI should point the user at system settings."""
        return self.gate.is_denied()

    def dismiss_error(self) -> None:
        self._last_error = None
        self._publish_state()

    def get(self, alarm_id: str) -> WrappedAlarm | None:
        for alarm in self._running:
            if alarm.id == alarm_id:
                return alarm
        for alarm in self._recent:
            if alarm.id == alarm_id:
                return alarm
        return None

    def snapshot(self) -> dict[str, Any]:
        now = self._clock()
        error = self._last_error
        return {
            "available": self.is_available,
            "authorization": self.gate.state() if self.is_available else "unavailable",
            "needs_settings_prompt": self.needs_settings_prompt,
            "capabilities": self.capabilities.to_dict(),
            "has_upcoming_alarms": self.has_upcoming_alarms,
            "running": [alarm.to_public_dict(now) for alarm in self._running],
            "recent": [alarm.to_public_dict(now) for alarm in self._recent],
            "alarms": [alarm.id for alarm in self.running_traditional_alarms],
            "timers": [alarm.id for alarm in self.running_timers],
            "custom": [alarm.id for alarm in self.running_custom_alarms],
            "error": (
                {
                    "type": type(error).__name__,
                    "message": str(error),
                    "recovery": error.recovery_suggestion,
                }
                if error
                else None
            ),
            "updated_at": serialize_dt(now),
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def add_alarm(
        self,
        *,
        title: str,
        schedule: Schedule,
        icon: str = "alarm",
        metadata: AlarmMetadata | None = None,
        alarm_id: str | None = None,
    ) -> WrappedAlarm:
        """Schedule a time-based alarm."""
        return await self._schedule_new(
            alarm_id,
            title=title,
            icon=icon,
            metadata=metadata,
            schedule=schedule,
            countdown=None,
            secondary_action=None,
        )

    async def add_timer(
        self,
        *,
        title: str,
        duration: float,
        icon: str = "timer",
        metadata: AlarmMetadata | None = None,
        alarm_id: str | None = None,
    ) -> WrappedAlarm:
        """Start a countdown-only alarm; its alert offers a repeat action."""
        return await self._schedule_new(
            alarm_id,
            title=title,
            icon=icon,
            metadata=metadata,
            schedule=None,
            countdown=CountdownDuration(pre_alert=duration),
            secondary_action="repeat",
            require_countdown=True,
        )

    async def add_custom(
        self,
        *,
        title: str,
        icon: str = "alarm",
        metadata: AlarmMetadata | None = None,
        schedule: Schedule | None = None,
        countdown: CountdownDuration | None = None,
        secondary_action: str | None = None,
        alarm_id: str | None = None,
    ) -> WrappedAlarm:
        return await self._schedule_new(
            alarm_id,
            title=title,
            icon=icon,
            metadata=metadata,
            schedule=schedule,
            countdown=countdown,
            secondary_action=secondary_action,
        )

    async def add_sleep_timer(self, sleep_context: str, *, wake_up_reason: str = "General") -> WrappedAlarm:
        preset = SLEEP_CONTEXTS.get(sleep_context)
        if preset is None:
            error = InvalidConfigurationError(f"Unknown sleep type: {sleep_context}")
            self._set_error(error)
            raise error
        metadata = self._make_metadata(sleep_context, wake_up_reason)
        return await self.add_timer(
            title=preset.name,
            icon=preset.icon,
            metadata=metadata,
            duration=preset.duration_seconds,
        )

    schedule_alarm = add_alarm
    schedule_timer = add_timer
    schedule_custom = add_custom

    async def update_alarm(
        self,
        existing: WrappedAlarm | str,
        *,
        title: str | None = None,
        icon: str | None = None,
        metadata: AlarmMetadata | None = None,
        schedule: Schedule | None = None,
        countdown: CountdownDuration | None = None,
        secondary_action: str | None = None,
    ) -> WrappedAlarm:
        """Replace an alarm's configuration, keeping its id.

        The authority offers no transactional update, so this cancels and then
        re-schedules. If the second step fails the alarm is gone at the
        authority but still listed locally until the next reconciliation pass
        moves it to recent.
        """
        if isinstance(existing, str):
            current = self.get(existing)
            alarm_id = existing
        else:
            current = existing
            alarm_id = existing.id
        await self._require_authorization()
        configuration = self._build_configuration(
            title=title if title is not None else (current.title if current else None),
            icon=icon if icon is not None else (current.icon if current and current.icon else "alarm"),
            metadata=metadata or (current.metadata if current else None),
            schedule=schedule if schedule is not None else (current.alarm.schedule if current else None),
            countdown=countdown if countdown is not None else (current.alarm.countdown if current else None),
            secondary_action=secondary_action or ("repeat" if current and current.is_timer else None),
        )
        try:
            await self._call(self._authority.cancel(alarm_id))
        except AlarmNotFoundError:
            LOGGER.debug("Alarm %s already gone at the authority before update", alarm_id)
        except Exception as exc:
            raise self._scheduling_failed("cancel", alarm_id, exc) from exc
        alarm = await self._schedule_at_authority(alarm_id, configuration)
        wrapped = self._wrap(alarm, configuration)
        async with self._lock:
            self._upsert_running(wrapped)
            self._persist()
        self._last_error = None
        self._publish_state()
        return wrapped

    async def delete_alarm(self, alarm_id: str) -> bool:
        """Cancel at the authority and forget the alarm locally."""
        tracked = any(alarm.id == alarm_id for alarm in self._running)
        if tracked:
            await self._require_authorization()
            try:
                await self._call(self._authority.cancel(alarm_id))
            except AlarmNotFoundError:
                LOGGER.debug("Alarm %s already gone at the authority", alarm_id)
            except Exception as exc:
                raise self._scheduling_failed("cancel", alarm_id, exc) from exc
        elif self.gate.is_authorized():
            try:
                await self._call(self._authority.cancel(alarm_id))
            except Exception as exc:
                LOGGER.debug("Ignoring cancel failure for untracked alarm %s: %s", alarm_id, exc)
        async with self._lock:
            before = len(self._running) + len(self._recent)
            self._running = [alarm for alarm in self._running if alarm.id != alarm_id]
            self._recent = [alarm for alarm in self._recent if alarm.id != alarm_id]
            removed = before != len(self._running) + len(self._recent)
            if removed:
                self._persist()
        if removed:
            self._publish_state()
        return removed

    async def pause_alarm(self, alarm_id: str) -> None:
        await self._request_transition("pause", alarm_id, supported=self.capabilities.pause)

    async def resume_alarm(self, alarm_id: str) -> None:
        await self._request_transition("resume", alarm_id, supported=self.capabilities.resume)

    async def repeat_alarm(self, alarm_id: str) -> None:
        await self._request_transition("countdown", alarm_id, supported=self.capabilities.countdown)

    async def stop_alarm(self, alarm_id: str) -> None:
        """Stop (or, without a stop primitive, cancel) and move the alarm to recent."""
        await self._require_authorization()
        operation = "stop" if self.capabilities.stop else "cancel"
        try:
            await self._call(getattr(self._authority, operation)(alarm_id))
        except AlarmNotFoundError:
            LOGGER.debug("Alarm %s already gone at the authority", alarm_id)
        except Exception as exc:
            raise self._scheduling_failed(operation, alarm_id, exc) from exc
        async with self._lock:
            moved = [alarm for alarm in self._running if alarm.id == alarm_id]
            if moved:
                self._running = [alarm for alarm in self._running if alarm.id != alarm_id]
                recent = [alarm for alarm in self._recent if alarm.id != alarm_id] + moved
                self._recent = trim_recent(recent, self._recent_limit)
                self._persist()
        if moved:
            self._publish_state()

    async def snooze_alarm(self, alarm_id: str, minutes: int = SNOOZE_MINUTES) -> WrappedAlarm:
        """Stop an alarm and schedule a one-shot replacement ``minutes`` from now."""
        minutes = max(1, minutes)
        original = self.get(alarm_id)
        await self.stop_alarm(alarm_id)
        reason = original.metadata.wake_up_reason if original else "General"
        return await self.add_alarm(
            title="Snoozed Alarm",
            icon="alarm.waves.left.and.right",
            metadata=self._make_metadata(None, reason),
            schedule=Schedule.fixed(self._clock() + timedelta(minutes=minutes)),
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def apply_snapshot(self, alarms: list[Alarm]) -> ReconcileResult:
        """Reconcile local state against a full authority snapshot."""
        async with self._lock:
            result = reconcile(
                self._running,
                alarms,
                self._recent,
                now=self._clock(),
                recent_limit=self._recent_limit,
            )
            self._running = result.running
            self._recent = result.recent
            self._persist()
        self._publish_state()
        return result

    async def refresh(self) -> ReconcileResult | None:
        """Pull the authority's current alarms and reconcile. Never prompts."""
        if not self.gate.is_authorized():
            return None
        try:
            alarms = await self._call(self._authority.alarms())
        except Exception as exc:
            LOGGER.warning("Failed to fetch alarms from the authority: %s", exc)
            return None
        return await self.apply_snapshot(alarms)

    async def _start_observing(self) -> None:
        # Both the permission prompt and the authorization stream can get here.
        async with self._observe_lock:
            if self.is_observing:
                return
            await self.refresh()
            self._observer_task = asyncio.create_task(self._observe_alarms())

    async def _observe_alarms(self) -> None:
        try:
            async for alarms in self._authority.alarm_updates():
                try:
                    await self.apply_snapshot(alarms)
                except Exception:
                    LOGGER.warning("Failed to reconcile alarm snapshot", exc_info=True)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Alarm update stream stopped: %s", exc)
        else:
            LOGGER.debug("Alarm update stream ended")

    async def _observe_authorization(self) -> None:
        try:
            async for state in self._authority.authorization_updates():
                LOGGER.info("Alarm authorization changed to %s", state)
                if state == "authorized":
                    await self._start_observing()
                self._publish_state()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Authorization update stream stopped: %s", exc)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _schedule_new(
        self,
        alarm_id: str | None,
        *,
        title: str | None,
        icon: str,
        metadata: AlarmMetadata | None,
        schedule: Schedule | None,
        countdown: CountdownDuration | None,
        secondary_action: str | None,
        require_countdown: bool = False,
    ) -> WrappedAlarm:
        await self._require_authorization()
        configuration = self._build_configuration(
            title=title,
            icon=icon,
            metadata=metadata,
            schedule=schedule,
            countdown=countdown,
            secondary_action=secondary_action,
            require_countdown=require_countdown,
        )
        alarm_id = alarm_id or uuid4().hex
        alarm = await self._schedule_at_authority(alarm_id, configuration)
        wrapped = self._wrap(alarm, configuration)
        async with self._lock:
            self._upsert_running(wrapped)
            self._persist()
        self._last_error = None
        LOGGER.info("Scheduled %s %s (%s)", wrapped.alarm_type, wrapped.id, wrapped.display_title)
        self._publish_state()
        return wrapped

    def _build_configuration(
        self,
        *,
        title: str | None,
        icon: str,
        metadata: AlarmMetadata | None,
        schedule: Schedule | None,
        countdown: CountdownDuration | None,
        secondary_action: str | None,
        require_countdown: bool = False,
    ) -> AlarmConfiguration:
        try:
            self._validate(schedule, countdown, require_countdown=require_countdown)
        except InvalidConfigurationError as error:
            self._set_error(error)
            raise
        cleaned_title = (title or "").strip() or "Alarm"
        return AlarmConfiguration(
            title=cleaned_title,
            icon=icon,
            metadata=metadata or self._make_metadata(None, "General"),
            schedule=schedule,
            countdown=countdown,
            secondary_action=secondary_action,
        )

    def _validate(
        self,
        schedule: Schedule | None,
        countdown: CountdownDuration | None,
        *,
        require_countdown: bool,
    ) -> None:
        if schedule is None and countdown is None:
            raise InvalidConfigurationError("An alarm needs a schedule or a countdown duration.")
        if countdown is not None:
            if not _valid_seconds(countdown.pre_alert):
                raise InvalidConfigurationError("Countdown duration must be a positive number of seconds.")
            if countdown.post_alert is not None and not _valid_seconds(countdown.post_alert):
                raise InvalidConfigurationError("Repeat duration must be a positive number of seconds.")
        elif require_countdown:
            raise InvalidConfigurationError("A timer needs a countdown duration.")
        if schedule is None:
            return
        if schedule.kind == "fixed":
            if schedule.date is None:
                raise InvalidConfigurationError("Fixed schedule is missing its date.")
            if schedule.date <= self._clock():
                raise ScheduleInPastError()
            return
        if schedule.hour is None or not 0 <= schedule.hour <= 23:
            raise InvalidConfigurationError("Alarm hour must be between 0 and 23.")
        if schedule.minute is None or not 0 <= schedule.minute <= 59:
            raise InvalidConfigurationError("Alarm minute must be between 0 and 59.")
        if any(not 0 <= day <= 6 for day in schedule.weekdays):
            raise InvalidConfigurationError("Repeat days must be between 0 (Monday) and 6 (Sunday).")

    def _make_metadata(self, sleep_context: str | None, wake_up_reason: str) -> AlarmMetadata:
        try:
            return AlarmMetadata.create(sleep_context, wake_up_reason, now=self._clock())
        except ValueError as exc:
            error = InvalidConfigurationError(str(exc))
            self._set_error(error)
            raise error from exc

    async def _require_authorization(self) -> None:
        if await self.gate.check_authorization():
            return
        if not self.gate.available:
            raise NotAuthorizedError(AuthorityUnavailableError.user_message)
        raise NotAuthorizedError()

    async def _schedule_at_authority(self, alarm_id: str, configuration: AlarmConfiguration) -> Alarm:
        try:
            return await self._call(self._authority.schedule(alarm_id, configuration))
        except Exception as exc:
            raise self._scheduling_failed("schedule", alarm_id, exc) from exc

    async def _request_transition(self, operation: str, alarm_id: str, *, supported: bool) -> None:
        """Ask the authority for a transition; the result arrives via reconciliation."""
        await self._require_authorization()
        if not supported:
            LOGGER.info("Authority has no %s primitive; alarm %s will update via its own controls", operation, alarm_id)
            return
        try:
            await self._call(getattr(self._authority, operation)(alarm_id))
        except Exception as exc:
            raise self._scheduling_failed(operation, alarm_id, exc) from exc

    def _scheduling_failed(self, operation: str, alarm_id: str, exc: BaseException) -> SchedulingFailedError:
        if isinstance(exc, TimeoutError):
            exc = TimeoutError(f"alarm authority did not answer {operation} within {self._timeout}s")
        LOGGER.warning("Alarm authority %s failed for %s: %s", operation, alarm_id, exc)
        error = SchedulingFailedError(exc)
        self._set_error(error)
        return error

    def _wrap(self, alarm: Alarm, configuration: AlarmConfiguration) -> WrappedAlarm:
        presentation = None
        if alarm.state == "countdown":
            presentation = PresentationState(mode="countdown", start_date=self._clock())
        return WrappedAlarm(
            alarm=alarm,
            metadata=configuration.metadata,
            title=configuration.title,
            icon=configuration.icon,
            presentation=presentation,
        )

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        return await await_with_timeout(awaitable, self._timeout)

    def _upsert_running(self, wrapped: WrappedAlarm) -> None:
        # A reconciliation pass may already have adopted this id as an orphan.
        replaced = False
        running: list[WrappedAlarm] = []
        for alarm in self._running:
            if alarm.id == wrapped.id:
                if not replaced:
                    running.append(wrapped)
                    replaced = True
                continue
            running.append(alarm)
        if not replaced:
            running.append(wrapped)
        self._running = running
        self._recent = [alarm for alarm in self._recent if alarm.id != wrapped.id]

    def _persist(self) -> None:
        self._store.save(self._running, self._recent)

    def _set_error(self, error: AlarmError | None) -> None:
        self._last_error = error

    def _publish_state(self) -> None:
        if not self._state_cb:
            return
        try:
            self._state_cb(self.snapshot())
        except Exception:
            LOGGER.warning("Alarm state callback failed", exc_info=True)
