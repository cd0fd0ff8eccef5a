"""Permission gate in front of every mutating alarm operation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .authority import AuthorizationState
from .errors import AlarmError, AuthorityUnavailableError, NotAuthorizedError

AuthorizedCallback = Callable[[], Awaitable[None]]
ErrorCallback = Callable[[AlarmError | None], None]

LOGGER = logging.getLogger("mrsleep.alarms.authorization")


class AuthorizationGate:
    """Track and lazily request alarm permission. Fails closed.

    The permission prompt is only ever shown from :meth:`check_authorization`,
    which callers invoke on a user-initiated mutation. Start-up and background
    observation use :meth:`is_authorized`, which never prompts.
    """

    def __init__(
        self,
        authority: Any | None,
        *,
        on_authorized: AuthorizedCallback | None = None,
        on_error: ErrorCallback | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._authority = authority
        self._on_authorized = on_authorized
        self._on_error = on_error
        self._logger = logger or LOGGER
        self._prompt_lock = asyncio.Lock()

    @property
    def available(self) -> bool:
        return self._authority is not None

    def state(self) -> AuthorizationState:
        if self._authority is None:
            return "denied"
        try:
            return self._authority.authorization_state()
        except Exception as exc:
            self._logger.warning("Unable to read alarm authorization state: %s", exc)
            return "not-determined"

    def is_authorized(self) -> bool:
        """Non-prompting probe."""
        return self._authority is not None and self.state() == "authorized"

    def is_denied(self) -> bool:
        return self._authority is not None and self.state() == "denied"

    async def check_authorization(self) -> bool:
        if self._authority is None:
            self._report(AuthorityUnavailableError())
            return False
        state = await self._refresh()
        if state == "authorized":
            self._report(None)
            return True
        if state == "denied":
            self._report(NotAuthorizedError())
            return False
        async with self._prompt_lock:
            # Another caller may have resolved the prompt while we waited.
            state = self.state()
            if state == "not-determined":
                try:
                    state = await self._authority.request_authorization()
                except Exception as exc:
                    self._logger.warning("Alarm authorization request failed: %s", exc)
                    self._report(NotAuthorizedError(f"Alarm authorization failed: {exc}"))
                    return False
                granted = state == "authorized"
                self._logger.info("Alarm authorization %s", "granted" if granted else "denied")
                if granted and self._on_authorized:
                    await self._on_authorized()
        if state != "authorized":
            self._report(NotAuthorizedError())
            return False
        self._report(None)
        return True

    async def _refresh(self) -> AuthorizationState:
        """Re-read a cached state that is not yet authorized.

        Permission can be granted outside the app (system settings), and some
        authorities only report the state they last observed.
        """
        state = self.state()
        refresh = getattr(self._authority, "refresh_authorization", None)
        if state == "authorized" or not callable(refresh):
            return state
        try:
            state = await refresh()
        except Exception as exc:
            self._logger.warning("Unable to refresh alarm authorization state: %s", exc)
            return state
        if state == "authorized":
            self._logger.info("Alarm authorization granted outside the app")
            if self._on_authorized:
                await self._on_authorized()
        return state

    def _report(self, error: AlarmError | None) -> None:
        if self._on_error:
            self._on_error(error)
