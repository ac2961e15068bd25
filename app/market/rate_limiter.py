"""Token-bucket rate limiter for the market-data provider.

The provider allows 20 calls per second per app key; the default of 18
keeps a 10 % margin.
"""

import asyncio
import time
from typing import Callable


class RateLimiter:
    """Async token bucket.

    Args:
        max_per_second: Refill rate and bucket capacity.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        max_per_second: float = 18.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_per_second <= 0:
            raise ValueError(
                f"max_per_second must be positive, got {max_per_second}"
            )
        self._rate = max_per_second
        self._clock = clock
        self._tokens = max_per_second
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def tokens(self) -> float:
        """Tokens currently available (not refilled)."""
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self._rate, self._tokens + elapsed * self._rate)
        self._last_refill = now

    async def acquire(self) -> float:
        """Take one token, sleeping for the deficit when the bucket is empty.

        Returns:
            Seconds spent waiting (0.0 when a token was available).
        """
        async with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return 0.0
            wait = (1 - self._tokens) / self._rate
            await asyncio.sleep(wait)
            self._tokens = 0.0
            self._last_refill = self._clock()
            return wait
