"""
In-process token bucket for outbound API calls.

Capacity is the configured requests-per-minute; tokens refill continuously.
One bucket lives for one run and is not shared across processes.
"""

import asyncio
import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Token bucket gate. `await acquire()` before every external call."""

    def __init__(
        self,
        requests_per_minute: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.capacity = float(requests_per_minute)
        self.refill_rate = requests_per_minute / 60.0  # tokens per second
        self.tokens = self.capacity
        self._clock = clock
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self._last_refill = now

    async def acquire(self) -> None:
        """Take one token, suspending until one is available."""
        async with self._lock:
            while True:
                self._refill()
                if self.tokens >= 1:
                    self.tokens -= 1
                    return
                wait = (1 - self.tokens) / self.refill_rate
                logger.debug("Rate limiter empty, waiting %.3fs", wait)
                await asyncio.sleep(wait)
