"""Token-bucket rate limiter for calls against external providers."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable


class TokenBucket:
    """Allows ``capacity`` calls in a burst, refilled at ``refill_per_second``.

    ``acquire`` waits until a token is available. The clock is injectable so
    tests can drive refills deterministically.
    """

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if refill_per_second <= 0:
            raise ValueError("refill_per_second must be positive")
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def per_minute(cls, calls: int) -> "TokenBucket":
        return cls(capacity=max(1, calls), refill_per_second=max(1, calls) / 60.0)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
        self._updated = now

    def try_acquire(self) -> bool:
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def acquire(self) -> None:
        async with self._lock:
            while not self.try_acquire():
                wait = (1 - self._tokens) / self.refill_per_second
                await asyncio.sleep(wait)

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens
