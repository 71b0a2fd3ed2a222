# attendance_etl/core/ratelimit.py
from __future__ import annotations

import asyncio
import time


class FixedDelayRateLimiter:
    """
    Spaces calls at least ``delay_ms`` apart. Owned by whoever makes the calls
    (an adapter client, the job runner) and passed in, never module state.
    """

    def __init__(self, delay_ms: int = 500):
        self.delay = max(delay_ms, 0) / 1000.0
        self._last: float = 0.0

    async def wait(self) -> None:
        now = time.monotonic()
        remaining = self._last + self.delay - now
        if self._last and remaining > 0:
            await asyncio.sleep(remaining)
        self._last = time.monotonic()


class NoopRateLimiter:
    def __init__(self):
        self.calls = 0

    async def wait(self) -> None:
        self.calls += 1
