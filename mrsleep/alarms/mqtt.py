"""MQTT helpers that mirror alarm state onto the UI bus."""

from __future__ import annotations

import json
import logging
import ssl
import threading
from typing import Any

import paho.mqtt.client as mqtt

from .config import MqttConfig

LOGGER = logging.getLogger("mrsleep.alarms.mqtt")


def _is_success(reason_code: Any) -> bool:
    if hasattr(reason_code, "is_failure"):
        return not reason_code.is_failure
    return reason_code == 0


class AlarmMqtt:
    """Connection to the broker for the alarm daemon.

    The daemon's presence is retained on ``<topic_base>/alarms/availability``:
    ``online`` after each (re)connect, ``offline`` on a clean shutdown and,
    through the broker's last will, when the connection drops. Retained
    messages published before a reconnect are replayed so a UI that missed
    the gap catches up.
    """

    def __init__(self, config: MqttConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self._logger = logger or LOGGER
        self._client: mqtt.Client | None = None
        self._lock = threading.Lock()
        self._retained: dict[str, str] = {}
        self.availability_topic = f"{config.topic_base.rstrip('/')}/alarms/availability"

    def connect(self) -> None:
        if not self.config.host:
            self._logger.debug("[mqtt] MQTT host not configured; alarm state publishing disabled")
            return
        with self._lock:
            if self._client is not None:
                return
            client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=f"mrsleep-alarmd-{self.config.topic_base}",
                clean_session=True,
            )
            if self.config.username:
                client.username_pw_set(self.config.username, self.config.password or "")
            if self.config.tls_enabled:
                tls_kwargs: dict[str, object] = {"tls_version": ssl.PROTOCOL_TLS_CLIENT}
                if self.config.ca_cert:
                    tls_kwargs["ca_certs"] = self.config.ca_cert
                if self.config.cert:
                    tls_kwargs["certfile"] = self.config.cert
                if self.config.key:
                    tls_kwargs["keyfile"] = self.config.key
                client.tls_set(**tls_kwargs)
            client.will_set(self.availability_topic, payload="offline", qos=1, retain=True)
            client.on_connect = self._on_connect
            try:
                client.connect(self.config.host, self.config.port, keepalive=30)
            except Exception as exc:
                self._logger.warning("[mqtt] Failed to connect to MQTT: %s", exc)
                return
            client.loop_start()
            self._client = client

    def disconnect(self) -> None:
        with self._lock:
            client = self._client
            self._client = None
        if client:
            try:
                client.publish(self.availability_topic, payload="offline", qos=1, retain=True)
            except Exception as exc:
                self._logger.debug("[mqtt] Failed to publish offline availability: %s", exc)
            client.loop_stop()
            client.disconnect()

    def is_connected(self) -> bool:
        client = self._client
        try:
            return bool(client and client.is_connected())
        except Exception:
            return False

    def publish(self, topic: str, payload: str, retain: bool = False, qos: int = 0) -> None:
        if retain:
            self._retained[topic] = payload
        client = self._client
        if not client:
            return
        try:
            client.publish(topic, payload=payload, qos=qos, retain=retain)
        except Exception as exc:
            self._logger.debug("[mqtt] Failed to publish MQTT message: %s", exc)

    def _on_connect(self, client, _userdata, _flags, reason_code, properties=None) -> None:
        if not _is_success(reason_code):
            self._logger.warning("[mqtt] MQTT connection refused (reason=%s)", reason_code)
            return
        self._logger.info("[mqtt] Connected to %s:%s", self.config.host, self.config.port)
        client.publish(self.availability_topic, payload="online", qos=1, retain=True)
        for topic, payload in list(self._retained.items()):
            client.publish(topic, payload=payload, qos=0, retain=True)


class AlarmStatePublisher:
    """Publish alarm manager snapshots.

    Meant to be passed as the manager's ``on_state_changed`` callback. The
    full snapshot is retained on ``<topic_base>/alarms/state`` so a UI that
    connects late sees current state; the error topic only changes when the
    error itself does.
    """

    def __init__(self, mqtt_client: AlarmMqtt, topic_base: str, logger: logging.Logger | None = None) -> None:
        self.mqtt = mqtt_client
        self.logger = logger or LOGGER
        base = topic_base.rstrip("/")
        self.state_topic = f"{base}/alarms/state"
        self.error_topic = f"{base}/alarms/error"
        self._last_error: dict[str, Any] | None = None

    def __call__(self, snapshot: dict[str, Any]) -> None:
        self.publish_snapshot(snapshot)

    def publish_snapshot(self, snapshot: dict[str, Any]) -> None:
        try:
            message = json.dumps(snapshot)
        except TypeError:
            self.logger.warning("[mqtt] Unable to serialize alarm snapshot: %s", snapshot)
            return
        self.mqtt.publish(self.state_topic, message, retain=True)
        error = snapshot.get("error")
        if error != self._last_error:
            self._last_error = error
            self.mqtt.publish(self.error_topic, json.dumps(error or {}), retain=True)
