"""Tests for the MQTT client wrapper and alarm state publisher."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, Mock, patch

from mrsleep.alarms.config import MqttConfig
from mrsleep.alarms.mqtt import AlarmMqtt, AlarmStatePublisher


@patch("paho.mqtt.client.Client")
def test_connect_success(mock_client_class, mqtt_config, mock_logger):
    """Test successful MQTT connection."""
    mock_client_instance = MagicMock()
    mock_client_class.return_value = mock_client_instance

    client = AlarmMqtt(mqtt_config, mock_logger)
    client.connect()

    call_kwargs = mock_client_class.call_args[1]
    assert call_kwargs["client_id"] == "mrsleep-alarmd-mrsleep/test-device"
    assert call_kwargs["clean_session"] is True
    mock_client_instance.connect.assert_called_once_with("localhost", 1883, keepalive=30)
    mock_client_instance.loop_start.assert_called_once()
    assert client.is_connected()
    mock_client_instance.will_set.assert_called_once_with(
        "mrsleep/test-device/alarms/availability", payload="offline", qos=1, retain=True
    )


@patch("paho.mqtt.client.Client")
def test_connect_with_tls_and_auth(mock_client_class, mock_logger):
    mock_client_instance = MagicMock()
    mock_client_class.return_value = mock_client_instance
    config = MqttConfig(
        host="broker",
        port=8883,
        username="user",
        password="pass",
        tls_enabled=True,
        cert="/path/to/client.crt",
        key="/path/to/client.key",
        ca_cert="/path/to/ca.crt",
        topic_base="mrsleep/test-device",
    )

    AlarmMqtt(config, mock_logger).connect()

    mock_client_instance.username_pw_set.assert_called_once_with("user", "pass")
    tls_kwargs = mock_client_instance.tls_set.call_args[1]
    assert tls_kwargs["ca_certs"] == "/path/to/ca.crt"
    assert tls_kwargs["certfile"] == "/path/to/client.crt"
    assert tls_kwargs["keyfile"] == "/path/to/client.key"


def test_connect_without_host(mock_logger):
    config = MqttConfig(
        host=None,
        port=1883,
        username=None,
        password=None,
        tls_enabled=False,
        cert=None,
        key=None,
        ca_cert=None,
        topic_base="mrsleep/test-device",
    )
    client = AlarmMqtt(config, mock_logger)
    client.connect()

    assert client._client is None
    assert not client.is_connected()
    mock_logger.debug.assert_called_once()


@patch("paho.mqtt.client.Client")
def test_connect_failure_is_logged(mock_client_class, mqtt_config, mock_logger):
    mock_client_instance = MagicMock()
    mock_client_instance.connect.side_effect = ConnectionRefusedError("Connection refused")
    mock_client_class.return_value = mock_client_instance

    client = AlarmMqtt(mqtt_config, mock_logger)
    client.connect()

    mock_logger.warning.assert_called_once()
    assert client._client is None


def test_publish_and_disconnect(mqtt_config, mock_mqtt_client):
    client = AlarmMqtt(mqtt_config)
    client._client = mock_mqtt_client

    client.publish("topic", "payload", retain=True)
    mock_mqtt_client.publish.assert_called_once_with("topic", payload="payload", qos=0, retain=True)

    client.disconnect()
    mock_mqtt_client.loop_stop.assert_called_once()
    mock_mqtt_client.disconnect.assert_called_once()
    assert client._client is None


def test_publish_without_connection_is_noop(mqtt_config):
    AlarmMqtt(mqtt_config).publish("topic", "payload")


def test_disconnect_announces_offline(mqtt_config, mock_mqtt_client):
    client = AlarmMqtt(mqtt_config)
    client._client = mock_mqtt_client

    client.disconnect()

    mock_mqtt_client.publish.assert_called_once_with(
        "mrsleep/test-device/alarms/availability", payload="offline", qos=1, retain=True
    )


def test_reconnect_replays_retained_state(mqtt_config, mock_mqtt_client, mock_logger):
    client = AlarmMqtt(mqtt_config, mock_logger)
    client.publish("mrsleep/test-device/alarms/state", '{"running": []}', retain=True)
    client.publish("mrsleep/test-device/alarms/tick", "1")

    client._on_connect(mock_mqtt_client, None, None, 0)

    published = [call[0][0] for call in mock_mqtt_client.publish.call_args_list]
    assert published == ["mrsleep/test-device/alarms/availability", "mrsleep/test-device/alarms/state"]
    mock_mqtt_client.publish.assert_any_call("mrsleep/test-device/alarms/availability", payload="online", qos=1, retain=True)


def test_refused_connection_publishes_nothing(mqtt_config, mock_mqtt_client, mock_logger):
    client = AlarmMqtt(mqtt_config, mock_logger)

    client._on_connect(mock_mqtt_client, None, None, 5)

    mock_mqtt_client.publish.assert_not_called()
    mock_logger.warning.assert_called_once()


class TestAlarmStatePublisher:
    def _snapshot(self, error=None):
        return {"running": [], "recent": [], "has_upcoming_alarms": False, "error": error}

    def test_snapshot_published_retained(self):
        mqtt = Mock(spec=AlarmMqtt)
        publisher = AlarmStatePublisher(mqtt, "mrsleep/bedroom/")

        publisher(self._snapshot())

        topic, message = mqtt.publish.call_args_list[0][0]
        assert topic == "mrsleep/bedroom/alarms/state"
        assert json.loads(message)["has_upcoming_alarms"] is False
        assert mqtt.publish.call_args_list[0][1] == {"retain": True}

    def test_error_published_only_on_change(self):
        mqtt = Mock(spec=AlarmMqtt)
        publisher = AlarmStatePublisher(mqtt, "mrsleep/bedroom")
        error = {"type": "NotAuthorizedError", "message": "denied", "recovery": "Settings"}

        publisher(self._snapshot(error))
        publisher(self._snapshot(error))
        publisher(self._snapshot(None))

        error_calls = [call for call in mqtt.publish.call_args_list if call[0][0] == "mrsleep/bedroom/alarms/error"]
        assert [json.loads(call[0][1]) for call in error_calls] == [error, {}]

    def test_unserializable_snapshot_skipped(self, mock_logger):
        mqtt = Mock(spec=AlarmMqtt)
        publisher = AlarmStatePublisher(mqtt, "mrsleep/bedroom", logger=mock_logger)

        publisher({"bad": object()})

        mqtt.publish.assert_not_called()
        mock_logger.warning.assert_called_once()
