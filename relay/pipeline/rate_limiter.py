"""Token bucket shared by all dispatcher workers.

The bucket allows bursts up to ``capacity`` and refills at ``rate`` tokens
per second, so ``capacity`` dispatches per ``window`` is the steady cap.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class TokenBucketRateLimiter:
    def __init__(
        self,
        rate: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate and capacity must be positive")
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self.last_update = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def per_window(cls, max_requests: int, window_seconds: float, **kwargs) -> "TokenBucketRateLimiter":
        return cls(rate=max_requests / window_seconds, capacity=max_requests, **kwargs)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_update
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_update = now

    def try_acquire(self, tokens: int = 1) -> bool:
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    async def acquire(self, tokens: int = 1) -> float:
        """Wait until ``tokens`` are available; returns the seconds spent waiting.

        Waiters are served one at a time so a burst cannot overdraw the bucket.
        """
        waited = 0.0
        async with self._lock:
            while not self.try_acquire(tokens):
                wait_time = (tokens - self.tokens) / self.rate
                if waited == 0.0:
                    logger.debug("Rate limit reached, waiting %.2fs for a token", wait_time)
                await self._sleep(wait_time)
                waited += wait_time
        return waited
