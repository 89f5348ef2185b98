"""Sliding-window rate limiter for a stage pool (the OCR provider's jobs-per-window ceiling)."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """At most *max_calls* acquisitions in any *window_seconds* span.

    Shared by all workers of one pool; ``acquire`` waits until a slot frees up.
    """

    def __init__(
        self,
        max_calls: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_seconds:
            self._calls.popleft()

    def try_acquire(self) -> float:
        """Take a slot if one is free; returns 0.0 on success, else seconds until one frees."""
        now = self._clock()
        self._prune(now)
        if len(self._calls) < self.max_calls:
            self._calls.append(now)
            return 0.0
        return max(0.0, self.window_seconds - (now - self._calls[0]))

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                wait = self.try_acquire()
                if wait <= 0:
                    return
                logger.debug("[rate-limit] Window full (%s/%ss), waiting %.2fs", self.max_calls, self.window_seconds, wait)
                await self._sleep(wait)
