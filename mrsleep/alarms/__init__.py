"""
Alarm and timer core for Mr Sleep

This package keeps a local, durable view of the alarms owned by an external
alarm authority and mediates every change to them:

- Authorization: lazy permission prompt, fail-closed gating of mutations
- Scheduling: alarms, countdown timers and sleep-preset timers via the authority
- Reconciliation: merging authority snapshots into running/recent collections
- Persistence: JSON-backed running and recent collections
- Views: traditional alarm, timer and custom categories

Key modules:
- manager: AlarmManager, the facade used by UIs and the daemon
- reconcile: pure reconciliation of local state against an authority snapshot
- authority: authority interface and the in-process LocalAlarmAuthority
- http_authority: httpx client for a remote alarm daemon
- mqtt: paho-mqtt state publishing
"""

from __future__ import annotations

__all__ = [
    "authority",
    "authorization",
    "config",
    "errors",
    "http_authority",
    "manager",
    "models",
    "mqtt",
    "reconcile",
    "store",
    "views",
]
