"""Shared test fixtures and configuration for the mrsleep test suite.

This module provides reusable fixtures for common test scenarios including:
- In-process alarm authority and on-disk alarm store
- Wrapped alarm factories for reconciliation and view tests
- MQTT configuration and client mocking
- Async test utilities
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from unittest.mock import Mock

import paho.mqtt.client as mqtt
import pytest
from mrsleep.alarms.authority import LocalAlarmAuthority
from mrsleep.alarms.config import MqttConfig
from mrsleep.alarms.manager import AlarmManager
from mrsleep.alarms.models import (
    Alarm,
    AlarmMetadata,
    CountdownDuration,
    Schedule,
    WrappedAlarm,
)
from mrsleep.alarms.store import AlarmStore

# ============================================================================
# Pytest Configuration
# ============================================================================


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio backend for async tests."""
    return "asyncio"


@pytest.fixture
def settle():
    """Let background observer tasks drain pending authority snapshots."""

    async def _settle(rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle


# ============================================================================
# Logging Fixtures
# ============================================================================


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing.

    Returns a Mock with spec=logging.Logger to ensure only valid
    logger methods can be called.
    """
    return Mock(spec=logging.Logger)


# ============================================================================
# Alarm Fixtures
# ============================================================================


@pytest.fixture
def now():
    return datetime(2025, 3, 10, 7, 0).astimezone()


@pytest.fixture
def make_alarm():
    """Factory for authority alarms.

    Usage:
        alarm = make_alarm("a1", state="countdown", kind="timer")
    """

    def _create(alarm_id: str, state: str = "scheduled", kind: str = "alarm") -> Alarm:
        schedule = None
        countdown = None
        if kind in {"alarm", "custom"}:
            schedule = Schedule.relative(7, 30)
        if kind in {"timer", "custom"}:
            countdown = CountdownDuration(pre_alert=600)
        return Alarm(id=alarm_id, state=state, schedule=schedule, countdown=countdown)

    return _create


@pytest.fixture
def make_wrapped(make_alarm, now):
    """Factory for wrapped alarms carrying app metadata."""

    def _create(
        alarm_id: str,
        state: str = "scheduled",
        kind: str = "alarm",
        *,
        created_offset: float = 0.0,
        sleep_context: str | None = None,
        title: str | None = None,
    ) -> WrappedAlarm:
        metadata = AlarmMetadata.create(
            sleep_context,
            "Work",
            now=now + timedelta(seconds=created_offset),
        )
        return WrappedAlarm(alarm=make_alarm(alarm_id, state, kind), metadata=metadata, title=title)

    return _create


@pytest.fixture
def store(tmp_path):
    return AlarmStore(tmp_path / "alarms.json")


@pytest.fixture
def authority():
    """In-process authority with permission granted and no running clock."""
    return LocalAlarmAuthority(authorization="authorized", run_clock=False)


@pytest.fixture
def published():
    """Collects every snapshot handed to the manager's state callback."""
    return []


@pytest.fixture
async def manager(authority, store, published):
    manager = AlarmManager(authority=authority, store=store, on_state_changed=published.append)
    await manager.start()
    yield manager
    await manager.stop()
    await authority.close()


# ============================================================================
# MQTT Fixtures
# ============================================================================


@pytest.fixture
def mqtt_config():
    """Create a basic MQTT configuration for testing."""
    return MqttConfig(
        host="localhost",
        port=1883,
        username=None,
        password=None,
        tls_enabled=False,
        cert=None,
        key=None,
        ca_cert=None,
        topic_base="mrsleep/test-device",
    )


@pytest.fixture
def mock_mqtt_client():
    """Create a mock paho MQTT client."""
    client = Mock(spec=mqtt.Client)
    client.publish = Mock()
    client.loop_start = Mock()
    client.loop_stop = Mock()
    client.is_connected = Mock(return_value=True)
    return client
