"""Alarm authority capability interface and an in-process authority.

An authority is the system of record for alarms: it owns firing and alert
delivery, and the alarm core only asks it for transitions. Authorities are
duck-typed. Every authority provides::

    authorization_state() -> AuthorizationState
    async request_authorization() -> AuthorizationState
    async schedule(alarm_id, configuration) -> Alarm
    async cancel(alarm_id) -> None
    async alarms() -> list[Alarm]
    alarm_updates() -> AsyncIterator[list[Alarm]]   # full snapshots, not deltas

and may additionally provide ``pause``, ``resume``, ``stop``, ``countdown``
(all ``async (alarm_id) -> None``) and ``authorization_updates()``. Which of
the optional members exist is probed once via :meth:`AuthorityCapabilities.detect`.

:class:`LocalAlarmAuthority` implements the full interface with asyncio timers
and is used when no remote authority is configured.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from mrsleep.datetime_utils import local_now

from .models import Alarm, AlarmConfiguration, AlarmState

AuthorizationState = Literal["not-determined", "denied", "authorized"]

AUTHORIZATION_STATES: tuple[AuthorizationState, ...] = ("not-determined", "denied", "authorized")

LOGGER = logging.getLogger("mrsleep.alarms.authority")


class AuthorityError(RuntimeError):
    """Generic alarm authority failure."""


class AuthorityAuthError(AuthorityError):
    """Raised when the authority refuses a request for lack of permission."""


class AlarmNotFoundError(AuthorityError):
    """Raised when the authority does not know the alarm id."""


@dataclass(frozen=True)
class AuthorityCapabilities:
    pause: bool = False
    resume: bool = False
    stop: bool = False
    countdown: bool = False
    authorization_updates: bool = False

    @classmethod
    def detect(cls, authority: Any) -> AuthorityCapabilities:
        def _has(name: str) -> bool:
            return callable(getattr(authority, name, None))

        return cls(
            pause=_has("pause"),
            resume=_has("resume"),
            stop=_has("stop"),
            countdown=_has("countdown"),
            authorization_updates=_has("authorization_updates"),
        )

    def to_dict(self) -> dict[str, bool]:
        return {
            "pause": self.pause,
            "resume": self.resume,
            "stop": self.stop,
            "countdown": self.countdown,
            "authorization_updates": self.authorization_updates,
        }


class _Latest:
    """Single-slot mailbox: a newer snapshot replaces one not yet delivered."""

    def __init__(self) -> None:
        self._item: list[Alarm] | None = None
        self._ready = asyncio.Event()

    def offer(self, item: list[Alarm] | None) -> None:
        self._item = item
        self._ready.set()

    async def take(self) -> list[Alarm] | None:
        await self._ready.wait()
        self._ready.clear()
        item, self._item = self._item, None
        return item


@dataclass
class _Entry:
    alarm: Alarm
    configuration: AlarmConfiguration
    remaining: float | None = None
    started_at: float | None = None
    task: asyncio.Task | None = None


class LocalAlarmAuthority:
    """In-process authority: keeps alarms in memory and drives their state with asyncio timers.

    With ``run_clock=False`` no timers run and transitions happen only through
    the public transition methods and :meth:`advance`.
    """

    def __init__(
        self,
        *,
        authorization: AuthorizationState = "not-determined",
        grant_on_request: bool = True,
        auto_dismiss_seconds: float = 60.0,
        run_clock: bool = True,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self._authorization: AuthorizationState = authorization
        self._grant_on_request = grant_on_request
        self._auto_dismiss_seconds = max(1.0, auto_dismiss_seconds)
        self._run_clock = run_clock
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._subscribers: set[_Latest] = set()
        self._auth_subscribers: set[asyncio.Queue] = set()
        self._closed = False
        self.authorization_requests = 0

    # Authorization

    def authorization_state(self) -> AuthorizationState:
        return self._authorization

    async def request_authorization(self) -> AuthorizationState:
        self.authorization_requests += 1
        if self._authorization == "not-determined":
            self._set_authorization("authorized" if self._grant_on_request else "denied")
        return self._authorization

    def set_authorization(self, state: AuthorizationState) -> None:
        """Change permission out of band, as a user would in system settings."""
        self._set_authorization(state)

    def _set_authorization(self, state: AuthorizationState) -> None:
        if state == self._authorization:
            return
        self._authorization = state
        for queue in list(self._auth_subscribers):
            queue.put_nowait(state)

    # Scheduling

    async def schedule(self, alarm_id: str, configuration: AlarmConfiguration) -> Alarm:
        self._require_authorized()
        if alarm_id in self._entries:
            raise AuthorityError(f"Alarm {alarm_id} is already scheduled")
        countdown = configuration.countdown
        if configuration.schedule is None and countdown is None:
            raise AuthorityError("Alarm needs a schedule or a countdown")
        if configuration.schedule is None:
            state: AlarmState = "countdown"
            remaining = countdown.pre_alert if countdown else None
        else:
            state = "scheduled"
            remaining = None
        alarm = Alarm(id=alarm_id, state=state, schedule=configuration.schedule, countdown=countdown)
        entry = _Entry(alarm=alarm, configuration=configuration, remaining=remaining)
        self._entries[alarm_id] = entry
        if state == "countdown":
            entry.started_at = self._loop_time()
        self._drive(entry)
        LOGGER.debug("Scheduled alarm %s (%s)", alarm_id, state)
        self._broadcast()
        return alarm

    async def cancel(self, alarm_id: str) -> None:
        entry = self._entries.pop(alarm_id, None)
        if entry is None:
            raise AlarmNotFoundError(f"Unknown alarm {alarm_id}")
        self._cancel_task(entry)
        self._broadcast()

    async def pause(self, alarm_id: str) -> None:
        entry = self._entry(alarm_id)
        if entry.alarm.state != "countdown":
            raise AuthorityError(f"Alarm {alarm_id} is not counting down")
        entry.remaining = self._remaining(entry)
        entry.started_at = None
        self._transition(entry, "paused")

    async def resume(self, alarm_id: str) -> None:
        entry = self._entry(alarm_id)
        if entry.alarm.state != "paused":
            raise AuthorityError(f"Alarm {alarm_id} is not paused")
        entry.started_at = self._loop_time()
        self._transition(entry, "countdown")

    async def stop(self, alarm_id: str) -> None:
        entry = self._entry(alarm_id)
        self._dismiss(entry)

    async def countdown(self, alarm_id: str) -> None:
        entry = self._entry(alarm_id)
        if entry.alarm.state != "alerting":
            raise AuthorityError(f"Alarm {alarm_id} is not alerting")
        countdown = entry.alarm.countdown
        duration = None
        if countdown is not None:
            duration = countdown.post_alert or countdown.pre_alert
        if not duration:
            raise AuthorityError(f"Alarm {alarm_id} has no countdown to repeat")
        entry.remaining = duration
        entry.started_at = self._loop_time()
        self._transition(entry, "countdown")

    async def advance(self, alarm_id: str) -> Alarm:
        """Force the next clock-driven transition of an alarm."""
        entry = self._entry(alarm_id)
        self._fire(entry)
        current = self._entries.get(alarm_id)
        return current.alarm if current else entry.alarm

    # Observation

    async def alarms(self) -> list[Alarm]:
        return self._snapshot()

    async def alarm_updates(self) -> AsyncIterator[list[Alarm]]:
        mailbox = _Latest()
        self._subscribers.add(mailbox)
        try:
            yield self._snapshot()
            while not self._closed:
                snapshot = await mailbox.take()
                if snapshot is None:
                    return
                yield snapshot
        finally:
            self._subscribers.discard(mailbox)

    async def authorization_updates(self) -> AsyncIterator[AuthorizationState]:
        queue: asyncio.Queue = asyncio.Queue()
        self._auth_subscribers.add(queue)
        try:
            while not self._closed:
                state = await queue.get()
                if state is None:
                    return
                yield state
        finally:
            self._auth_subscribers.discard(queue)

    async def close(self) -> None:
        self._closed = True
        for entry in self._entries.values():
            self._cancel_task(entry)
        for mailbox in list(self._subscribers):
            mailbox.offer(None)
        for queue in list(self._auth_subscribers):
            queue.put_nowait(None)

    # Internals

    def _require_authorized(self) -> None:
        if self._authorization != "authorized":
            raise AuthorityAuthError("Alarm permission has not been granted")

    def _entry(self, alarm_id: str) -> _Entry:
        entry = self._entries.get(alarm_id)
        if entry is None:
            raise AlarmNotFoundError(f"Unknown alarm {alarm_id}")
        return entry

    def _snapshot(self) -> list[Alarm]:
        return [entry.alarm for entry in self._entries.values()]

    def _broadcast(self) -> None:
        snapshot = self._snapshot()
        for mailbox in list(self._subscribers):
            mailbox.offer(list(snapshot))

    def _loop_time(self) -> float:
        return asyncio.get_running_loop().time()

    def _remaining(self, entry: _Entry) -> float:
        remaining = entry.remaining or 0.0
        if entry.started_at is not None:
            remaining -= self._loop_time() - entry.started_at
        return max(0.0, remaining)

    def _transition(self, entry: _Entry, state: AlarmState) -> None:
        entry.alarm = entry.alarm.with_state(state)
        self._drive(entry)
        self._broadcast()

    def _dismiss(self, entry: _Entry) -> None:
        schedule = entry.alarm.schedule
        if schedule is not None and schedule.repeats:
            entry.remaining = None
            entry.started_at = None
            self._transition(entry, "scheduled")
            return
        self._entries.pop(entry.alarm.id, None)
        self._cancel_task(entry)
        self._broadcast()

    def _fire(self, entry: _Entry) -> None:
        state = entry.alarm.state
        if state == "scheduled":
            countdown = entry.alarm.countdown
            if countdown is not None and countdown.pre_alert:
                entry.remaining = countdown.pre_alert
                entry.started_at = self._loop_time()
                self._transition(entry, "countdown")
            else:
                self._transition(entry, "alerting")
        elif state == "countdown":
            entry.remaining = 0.0
            entry.started_at = None
            self._transition(entry, "alerting")
        elif state == "alerting":
            self._dismiss(entry)

    def _delay(self, entry: _Entry) -> float | None:
        state = entry.alarm.state
        if state == "scheduled":
            schedule = entry.alarm.schedule
            now = self._clock()
            fire = schedule.next_fire(after=now) if schedule else None
            if fire is None:
                return None
            return max(0.0, (fire - now).total_seconds())
        if state == "countdown":
            return self._remaining(entry)
        if state == "alerting":
            return self._auto_dismiss_seconds
        return None

    def _drive(self, entry: _Entry) -> None:
        self._cancel_task(entry)
        if not self._run_clock or self._closed:
            return
        delay = self._delay(entry)
        if delay is None:
            return
        entry.task = asyncio.create_task(self._wait_and_fire(entry.alarm.id, entry.alarm.state, delay))

    async def _wait_and_fire(self, alarm_id: str, state: AlarmState, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        entry = self._entries.get(alarm_id)
        if entry is None or entry.alarm.state != state:
            return
        entry.task = None
        self._fire(entry)

    @staticmethod
    def _cancel_task(entry: _Entry) -> None:
        task = entry.task
        entry.task = None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
