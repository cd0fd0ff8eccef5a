"""Merge the authority's alarm snapshot into the locally tracked collections.

The authority is the system of record. Each pass takes the full list of
alarms it currently knows and rebuilds ``running``/``recent``:

- alarms the app already tracks get their inner authority alarm replaced;
- alarms the app does not know (orphans, e.g. scheduled before a reinstall)
  are adopted with default metadata, into ``recent`` if already alerting;
- tracked alarms missing from the snapshot are presumed fired or cancelled
  elsewhere and move to ``recent``. The two cases cannot be told apart.

The function is pure and idempotent: feeding its ``running``/``recent`` back
in with the same snapshot yields the same collections.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from .models import RUNNING_STATES, Alarm, WrappedAlarm, default_wrapped


@dataclass(frozen=True)
class ReconcileResult:
    running: list[WrappedAlarm]
    recent: list[WrappedAlarm]

    @property
    def running_ids(self) -> list[str]:
        return [alarm.id for alarm in self.running]

    @property
    def recent_ids(self) -> list[str]:
        return [alarm.id for alarm in self.recent]


def _index(alarms: Iterable[WrappedAlarm]) -> dict[str, WrappedAlarm]:
    indexed: dict[str, WrappedAlarm] = {}
    for alarm in alarms:
        indexed.setdefault(alarm.id, alarm)
    return indexed


def _dedupe_snapshot(authority_alarms: Iterable[Alarm]) -> list[Alarm]:
    seen: dict[str, Alarm] = {}
    for alarm in authority_alarms:
        # Later entries win if the authority repeats an id.
        seen.pop(alarm.id, None)
        seen[alarm.id] = alarm
    return list(seen.values())


def trim_recent(recent: list[WrappedAlarm], limit: int | None) -> list[WrappedAlarm]:
    if limit is None or limit < 0 or len(recent) <= limit:
        return recent
    if limit == 0:
        return []
    return recent[-limit:]


def reconcile(
    local_running: Sequence[WrappedAlarm],
    authority_alarms: Iterable[Alarm],
    recent: Sequence[WrappedAlarm] = (),
    *,
    now: datetime | None = None,
    recent_limit: int | None = None,
) -> ReconcileResult:
    snapshot = _dedupe_snapshot(authority_alarms)
    running_by_id = _index(local_running)
    recent_by_id = _index(recent)

    new_running: list[WrappedAlarm] = []
    # Insertion-ordered; existing history first, later additions appended.
    new_recent: dict[str, WrappedAlarm] = dict(recent_by_id)

    for remote in snapshot:
        existing = running_by_id.get(remote.id)
        if existing is not None:
            new_running.append(existing.replacing_alarm(remote, now=now))
            continue
        historical = recent_by_id.get(remote.id)
        if remote.state in RUNNING_STATES:
            if historical is not None:
                # Came back to life at the authority; keep the metadata we had.
                new_recent.pop(remote.id, None)
                new_running.append(historical.replacing_alarm(remote, now=now))
            else:
                new_running.append(default_wrapped(remote, now=now))
        elif remote.state == "alerting":
            if historical is not None:
                new_recent[remote.id] = historical.replacing_alarm(remote, now=now)
            else:
                new_recent[remote.id] = default_wrapped(remote, now=now)

    remote_ids = {alarm.id for alarm in snapshot}
    for local in running_by_id.values():
        if local.id in remote_ids:
            continue
        new_recent.pop(local.id, None)
        new_recent[local.id] = local

    running_ids = {alarm.id for alarm in new_running}
    recent_list = [alarm for alarm_id, alarm in new_recent.items() if alarm_id not in running_ids]
    return ReconcileResult(running=new_running, recent=trim_recent(recent_list, recent_limit))
