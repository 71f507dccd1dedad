"""Process-wide token bucket shared by every outbound request."""

from __future__ import annotations

import asyncio
import time


class TokenBucket:
    """Async token bucket.

    Tokens refill continuously at *rate* per second up to *burst*. Callers
    wait in :meth:`acquire` until a token is available; the check-and-take is
    done under a lock so concurrent callers never share a token.
    """

    def __init__(self, rate: float, burst: int = 1, clock=time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
            self._updated = now

    def try_acquire(self) -> bool:
        """Take a token if one is available right now."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def acquire(self) -> None:
        async with self._lock:
            while not self.try_acquire():
                await asyncio.sleep((1 - self._tokens) / self.rate)
