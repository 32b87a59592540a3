"""
Adaptive submission throttle shared by every job in the process.

Bounds how many remote submissions run at once. A quota error halves the
limit (never below the minimum); a run of successful submissions raises it
by one again, up to the configured maximum.
"""

import asyncio
import logging

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 3
DEFAULT_MIN_CONCURRENT = 1
DEFAULT_RECOVERY_SUCCESSES = 5


class AdaptiveThrottle:
    """
    Usage:
        throttle = AdaptiveThrottle(max_concurrent=3)
        async with throttle:
            handle = await poller.submit(request)
        await throttle.on_success()
    """

    def __init__(
        self,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        min_concurrent: int = DEFAULT_MIN_CONCURRENT,
        recovery_successes: int = DEFAULT_RECOVERY_SUCCESSES,
    ):
        if min_concurrent < 1 or max_concurrent < min_concurrent:
            raise ValueError("Require 1 <= min_concurrent <= max_concurrent")
        self.max_concurrent = max_concurrent
        self.min_concurrent = min_concurrent
        self.recovery_successes = max(1, recovery_successes)

        self._limit = max_concurrent
        self._active = 0
        self._streak = 0
        self._condition = asyncio.Condition()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    async def acquire(self) -> None:
        async with self._condition:
            await self._condition.wait_for(lambda: self._active < self._limit)
            self._active += 1

    async def release(self) -> None:
        async with self._condition:
            self._active -= 1
            self._condition.notify_all()

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()

    def on_quota_exceeded(self) -> int:
        """Halve the limit. Returns the new limit."""
        previous = self._limit
        self._limit = max(self.min_concurrent, self._limit // 2)
        self._streak = 0
        logger.warning(f"Quota exceeded: concurrency limit {previous} -> {self._limit}")
        return self._limit

    async def on_success(self) -> int:
        """Count a successful submission. Returns the current limit."""
        self._streak += 1
        if self._streak >= self.recovery_successes and self._limit < self.max_concurrent:
            async with self._condition:
                self._limit += 1
                self._streak = 0
                self._condition.notify_all()
            logger.info(f"Concurrency limit restored to {self._limit}")
        return self._limit
