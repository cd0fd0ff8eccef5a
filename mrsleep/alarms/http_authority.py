"""Async client for a remote alarm daemon exposing the authority over HTTP."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from .authority import (
    AUTHORIZATION_STATES,
    AlarmNotFoundError,
    AuthorityAuthError,
    AuthorityError,
    AuthorizationState,
)
from .config import AuthorityConfig
from .models import Alarm, AlarmConfiguration

LOGGER = logging.getLogger("mrsleep.alarms.http_authority")


def _parse_alarms(payload: Any) -> list[Alarm]:
    if isinstance(payload, dict):
        payload = payload.get("alarms")
    if not isinstance(payload, list):
        raise AuthorityError(f"Unexpected alarm list payload: {payload!r}")
    alarms: list[Alarm] = []
    for item in payload:
        try:
            alarms.append(Alarm.from_dict(item))
        except (KeyError, TypeError, ValueError):
            LOGGER.debug("Skipping malformed alarm from authority: %s", item, exc_info=True)
    return alarms


def _parse_authorization(payload: Any) -> AuthorizationState:
    state = payload.get("state") if isinstance(payload, dict) else payload
    if state not in AUTHORIZATION_STATES:
        raise AuthorityError(f"Unexpected authorization state: {state!r}")
    return state


@dataclass(slots=True)
class HttpAlarmAuthority:
    """Authority backed by a REST API with a long-lived NDJSON update stream.

    ``authorization_state()`` is synchronous in the authority interface, so the
    client keeps the last state it observed. :meth:`refresh_authorization`
    fetches it from the daemon; :meth:`open` calls it once and the
    authorization gate calls it again while the cached state is not
    ``authorized``.
    """

    config: AuthorityConfig
    transport: httpx.AsyncBaseTransport | None = None
    reconnect_delay: float = 5.0
    _client: httpx.AsyncClient = field(init=False, repr=False)
    _closed: bool = field(init=False, default=True, repr=False)
    _authorization: AuthorizationState = field(init=False, default="not-determined", repr=False)

    def __post_init__(self) -> None:
        if not self.config.base_url:
            raise ValueError("Alarm authority base URL is not configured")
        headers = {"Content-Type": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            headers=headers,
            timeout=self.config.timeout,
            verify=self.config.verify_ssl,
            transport=self.transport,
            trust_env=False,
        )
        self._closed = False

    async def open(self) -> None:
        try:
            await self.refresh_authorization()
        except AuthorityError as exc:
            LOGGER.warning("Unable to read alarm authorization state: %s", exc)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()

    def authorization_state(self) -> AuthorizationState:
        return self._authorization

    async def refresh_authorization(self) -> AuthorizationState:
        self._authorization = _parse_authorization(await self._request("GET", "/api/authorization"))
        return self._authorization

    async def request_authorization(self) -> AuthorizationState:
        self._authorization = _parse_authorization(await self._request("POST", "/api/authorization/request"))
        return self._authorization

    async def schedule(self, alarm_id: str, configuration: AlarmConfiguration) -> Alarm:
        payload = await self._request("PUT", f"/api/alarms/{alarm_id}", json=configuration.to_dict())
        try:
            return Alarm.from_dict(payload)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise AuthorityError(f"Unexpected schedule response: {payload!r}") from exc

    async def cancel(self, alarm_id: str) -> None:
        await self._request("DELETE", f"/api/alarms/{alarm_id}")

    async def pause(self, alarm_id: str) -> None:
        await self._request("POST", f"/api/alarms/{alarm_id}/pause")

    async def resume(self, alarm_id: str) -> None:
        await self._request("POST", f"/api/alarms/{alarm_id}/resume")

    async def stop(self, alarm_id: str) -> None:
        await self._request("POST", f"/api/alarms/{alarm_id}/stop")

    async def countdown(self, alarm_id: str) -> None:
        await self._request("POST", f"/api/alarms/{alarm_id}/countdown")

    async def alarms(self) -> list[Alarm]:
        return _parse_alarms(await self._request("GET", "/api/alarms"))

    async def alarm_updates(self) -> AsyncIterator[list[Alarm]]:
        """Yield full alarm snapshots, reconnecting after transport failures."""
        while not self._closed:
            try:
                async with self._client.stream("GET", "/api/alarms/updates", timeout=None) as response:
                    if response.status_code in (401, 403):
                        raise AuthorityAuthError("Alarm authority rejected the update stream")
                    if response.status_code >= 400:
                        raise AuthorityError(f"Alarm authority error {response.status_code} on update stream")
                    async for line in response.aiter_lines():
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            payload = json.loads(line)
                        except json.JSONDecodeError:
                            LOGGER.debug("Ignoring malformed update line: %s", line)
                            continue
                        yield _parse_alarms(payload)
            except httpx.TransportError as exc:
                if self._closed:
                    return
                LOGGER.warning("Alarm update stream interrupted: %s", exc)
            if self._closed:
                return
            await asyncio.sleep(self.reconnect_delay)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            raise AuthorityError(f"Failed to contact alarm authority: {exc}") from exc
        if response.status_code in (401, 403):
            raise AuthorityAuthError("Alarm authority rejected the request")
        if response.status_code == 404:
            raise AlarmNotFoundError(f"Alarm authority has no resource at {path}")
        if response.status_code >= 400:
            raise AuthorityError(f"Alarm authority error {response.status_code}: {response.text}")
        if response.headers.get("content-type", "").startswith("application/json"):
            return response.json()
        return response.text
