"""
In-memory sliding-window rate limiter keyed by client IP.
Single-process only; use Redis or similar for multi-instance consistency.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int


class SlidingWindowRateLimiter:
    """
    Keeps the timestamps of accepted hits per key for the last `window_seconds`.
    A hit is accepted while fewer than `limit` timestamps remain in the window.
    """

    SWEEP_EVERY = 1000

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()
        self._calls = 0

    async def hit(self, key: str) -> RateLimitDecision:
        async with self._lock:
            now = self._clock()
            self._calls += 1
            if self._calls % self.SWEEP_EVERY == 0:
                self._sweep(now)

            timestamps = self._hits.setdefault(key, deque())
            self._prune(timestamps, now)

            if len(timestamps) >= self.limit:
                retry_after = timestamps[0] + self.window_seconds - now
                return RateLimitDecision(
                    allowed=False,
                    limit=self.limit,
                    remaining=0,
                    retry_after_seconds=max(1, int(retry_after + 0.999)),
                )
            timestamps.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=self.limit,
                remaining=self.limit - len(timestamps),
                retry_after_seconds=0,
            )

    async def reset(self, key: str | None = None) -> None:
        async with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)

    def tracked_keys(self) -> int:
        return len(self._hits)

    def _prune(self, timestamps: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

    def _sweep(self, now: float) -> None:
        for key in list(self._hits):
            timestamps = self._hits[key]
            self._prune(timestamps, now)
            if not timestamps:
                del self._hits[key]
