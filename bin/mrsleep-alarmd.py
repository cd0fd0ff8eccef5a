#!/usr/bin/env python3
"""Mr Sleep alarm daemon."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Any

from mrsleep.alarms.authority import LocalAlarmAuthority
from mrsleep.alarms.config import AlarmServiceConfig
from mrsleep.alarms.http_authority import HttpAlarmAuthority
from mrsleep.alarms.manager import AlarmManager
from mrsleep.alarms.mqtt import AlarmMqtt, AlarmStatePublisher
from mrsleep.alarms.store import AlarmStore

LOGGER = logging.getLogger("mrsleep-alarmd")


def build_authority(config: AlarmServiceConfig) -> Any:
    if config.authority.base_url:
        LOGGER.info("Using remote alarm authority at %s", config.authority.base_url)
        return HttpAlarmAuthority(config.authority)
    LOGGER.info("No alarm authority URL configured; using the in-process authority")
    return LocalAlarmAuthority(
        authorization="authorized" if config.authority.local_auto_authorize else "not-determined",
    )


async def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = AlarmServiceConfig.from_env()
    mqtt = AlarmMqtt(config.mqtt)
    mqtt.connect()
    publisher = AlarmStatePublisher(mqtt, config.mqtt.topic_base)

    authority = build_authority(config)
    if isinstance(authority, HttpAlarmAuthority):
        await authority.open()
    manager = AlarmManager(
        authority=authority,
        store=AlarmStore(config.store_path),
        on_state_changed=publisher,
        recent_limit=config.recent_limit,
        authority_timeout=config.authority.timeout,
    )

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _handle_signal(signum: int) -> None:
        LOGGER.info("Received signal %s, shutting down", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    await manager.start()
    try:
        await stop_event.wait()
    finally:
        await manager.stop()
        await authority.close()
        mqtt.disconnect()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
