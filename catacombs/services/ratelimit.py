"""Minimum-spacing gate for outgoing provider requests."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable


class RateLimiter:
    """Allow at most ``max_per_second`` calls by spacing them evenly.

    Before each call the limiter waits
    ``max(0, min_interval - time_since_last_call)``.
    """

    def __init__(
        self,
        max_per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if max_per_second <= 0:
            raise ValueError("max_per_second must be positive")
        self.min_interval = 1.0 / max_per_second
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None
        self._lock = asyncio.Lock()

    def with_rate(self, max_per_second: float) -> RateLimiter:
        """A fresh limiter sharing this one's clock and sleep function."""

        return RateLimiter(max_per_second, clock=self._clock, sleep=self._sleep)

    async def wait(self) -> float:
        """Block until the next call is allowed; returns the time slept."""

        async with self._lock:
            delay = 0.0
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                delay = max(0.0, self.min_interval - elapsed)
            if delay > 0:
                await self._sleep(delay)
            self._last_call = self._clock()
            return delay
