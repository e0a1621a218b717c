"""Miscellaneous helpers."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator


class RateLimiter:
    """Simple rate limiter using sleep between events."""

    def __init__(self, rate_per_second: float):
        self.update_rate(rate_per_second)
        self._lock = asyncio.Lock()
        self._next_time = 0.0

    def update_rate(self, rate_per_second: float) -> None:
        self._interval = 0.0 if rate_per_second <= 0 else 1.0 / rate_per_second

    async def wait(self) -> None:
        async with self._lock:
            if self._interval <= 0:
                return
            now = time.perf_counter()
            if now < self._next_time:
                await asyncio.sleep(self._next_time - now)
            self._next_time = time.perf_counter() + self._interval


class SourceProcessingGuard:
    """Serialize work on the same source key across coroutines.

    Locks are FIFO, so units for one key run in the order they arrive while
    different keys proceed independently.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    @asynccontextmanager
    async def lock(self, source_key: str) -> AsyncIterator[None]:
        async with self._registry_lock:
            lock = self._locks.get(source_key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[source_key] = lock
        async with lock:
            yield


def parse_delay_setting(value: object, default: float = 0.0) -> float:
    """Parse a delay setting into seconds.

    JSON numbers are milliseconds. Strings keep the textual form: digits only
    are milliseconds, a decimal point or exponent means seconds.
    """

    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return max(0.0, value / 1000)
    stripped = str(value).strip()
    if not stripped:
        return default
    try:
        if any(symbol in stripped for symbol in ".eE"):
            parsed = float(stripped)
        else:
            parsed = float(int(stripped) / 1000)
    except ValueError:
        return default
    return max(0.0, parsed)


def parse_bool(value: object, default: bool = False) -> bool:
    """Parse boolean configuration values.

    JSON booleans are returned as-is. Supported truthy strings: ``on``,
    ``true``, ``yes``, ``1`` (case-insensitive). Supported falsy strings:
    ``off``, ``false``, ``no``, ``0``. Any other value returns ``default``.
    """

    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if not normalized:
        return default
    if normalized in {"on", "true", "yes", "1"}:
        return True
    if normalized in {"off", "false", "no", "0"}:
        return False
    return default
