"""Durable storage for the running and recent alarm collections.

The backing file is a small JSON key-value document. Each collection lives
under its own key with a version tag so older or newer payload shapes can be
recognised and discarded instead of crashing start-up::

    {
      "alarms.running": {"version": 1, "alarms": [...]},
      "alarms.recent": {"version": 1, "alarms": [...]}
    }

Unknown keys written by other components are preserved on save.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from .models import WrappedAlarm

STORE_VERSION = 1
RUNNING_KEY = "alarms.running"
RECENT_KEY = "alarms.recent"

LOGGER = logging.getLogger("mrsleep.alarms.store")


class AlarmStore:
    def __init__(self, path: Path, *, logger: logging.Logger | None = None) -> None:
        self.path = path
        self._logger = logger or LOGGER

    def load(self) -> tuple[list[WrappedAlarm], list[WrappedAlarm]]:
        document = self._read_document()
        return self._decode(document, RUNNING_KEY), self._decode(document, RECENT_KEY)

    def load_running(self) -> list[WrappedAlarm]:
        return self._decode(self._read_document(), RUNNING_KEY)

    def load_recent(self) -> list[WrappedAlarm]:
        return self._decode(self._read_document(), RECENT_KEY)

    def save(self, running: Iterable[WrappedAlarm], recent: Iterable[WrappedAlarm]) -> bool:
        """Write both collections. Failures are logged and reported as False."""
        try:
            document = self._read_document()
            document[RUNNING_KEY] = {"version": STORE_VERSION, "alarms": [a.to_json_dict() for a in running]}
            document[RECENT_KEY] = {"version": STORE_VERSION, "alarms": [a.to_json_dict() for a in recent]}
            payload = json.dumps(document, indent=2)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            tmp_path.write_text(payload, encoding="utf-8")
            tmp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as exc:
            self._logger.warning("Failed to save alarms to %s: %s", self.path, exc)
            return False
        return True

    def _read_document(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
            self._logger.warning("Failed to load alarm store %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            self._logger.warning("Ignoring alarm store %s with unexpected layout", self.path)
            return {}
        return data

    def _decode(self, document: dict[str, Any], key: str) -> list[WrappedAlarm]:
        blob = document.get(key)
        if blob is None:
            return []
        if not isinstance(blob, dict) or blob.get("version") != STORE_VERSION:
            self._logger.warning("Discarding %s entry with unsupported version", key)
            return []
        alarms: list[WrappedAlarm] = []
        seen: set[str] = set()
        for item in blob.get("alarms") or []:
            try:
                alarm = WrappedAlarm.from_dict(item)
            except Exception:
                self._logger.debug("Skipping invalid %s entry: %s", key, item, exc_info=True)
                continue
            if alarm.id in seen:
                continue
            seen.add(alarm.id)
            alarms.append(alarm)
        return alarms
