"""
Shared utility functions for parsing and async helpers

Provides common helpers for:
- String parsing: Environment variable conversion (parse_bool, parse_int, parse_float)
- Async utilities: Timeout wrappers for authority round-trips

These utilities are used by the alarm configuration and the scheduling facade.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Interpret env-style booleans."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(value: str | None, default: int) -> int:
    """Best-effort int parser with fallback."""
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_float(value: str | None, default: float) -> float:
    """Best-effort float parser with fallback."""
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


async def await_with_timeout(awaitable: Awaitable[Any], timeout: float | None) -> Any:
    """Await a coroutine with an optional timeout."""
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout)
