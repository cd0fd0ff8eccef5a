"""Configuration helpers for the alarm service."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from pathlib import Path

from mrsleep.utils import parse_bool, parse_float, parse_int

DEFAULT_STORE_PATH = Path.home() / ".local" / "share" / "mrsleep" / "alarms.json"
DEFAULT_RECENT_LIMIT = 50


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


@dataclass(frozen=True)
class AuthorityConfig:
    base_url: str | None
    token: str | None
    verify_ssl: bool
    timeout: float
    local_auto_authorize: bool


@dataclass(frozen=True)
class MqttConfig:
    host: str | None
    port: int
    username: str | None
    password: str | None
    tls_enabled: bool
    cert: str | None
    key: str | None
    ca_cert: str | None
    topic_base: str


@dataclass(frozen=True)
class AlarmServiceConfig:
    hostname: str
    store_path: Path
    recent_limit: int
    authority: AuthorityConfig
    mqtt: MqttConfig

    @staticmethod
    def from_env(env: dict[str, str] | None = None) -> AlarmServiceConfig:
        source = env if env is not None else os.environ
        hostname = source.get("MRSLEEP_HOSTNAME") or socket.gethostname()

        store_raw = _strip_or_none(source.get("MRSLEEP_ALARM_STORE"))
        store_path = Path(store_raw).expanduser() if store_raw else DEFAULT_STORE_PATH
        recent_limit = max(0, parse_int(source.get("MRSLEEP_RECENT_LIMIT"), DEFAULT_RECENT_LIMIT))

        authority = AuthorityConfig(
            base_url=_strip_or_none(source.get("MRSLEEP_AUTHORITY_URL")),
            token=_strip_or_none(source.get("MRSLEEP_AUTHORITY_TOKEN")),
            verify_ssl=parse_bool(source.get("MRSLEEP_AUTHORITY_VERIFY_SSL"), True),
            timeout=max(0.5, parse_float(source.get("MRSLEEP_AUTHORITY_TIMEOUT"), 10.0)),
            local_auto_authorize=parse_bool(source.get("MRSLEEP_LOCAL_AUTO_AUTHORIZE"), True),
        )

        mqtt = MqttConfig(
            host=_strip_or_none(source.get("MQTT_HOST")),
            port=parse_int(source.get("MQTT_PORT"), 1883),
            username=_strip_or_none(source.get("MQTT_USER") or source.get("MQTT_USERNAME")),
            password=_strip_or_none(source.get("MQTT_PASS") or source.get("MQTT_PASSWORD")),
            tls_enabled=parse_bool(source.get("MQTT_TLS_ENABLED"), False),
            cert=_strip_or_none(source.get("MQTT_CERT")),
            key=_strip_or_none(source.get("MQTT_KEY")),
            ca_cert=_strip_or_none(source.get("MQTT_CA_CERT")),
            topic_base=source.get("MRSLEEP_TOPIC_BASE") or f"mrsleep/{hostname}",
        )

        return AlarmServiceConfig(
            hostname=hostname,
            store_path=store_path,
            recent_limit=recent_limit,
            authority=authority,
            mqtt=mqtt,
        )
