import asyncio
import time
from collections import deque
from typing import Callable, Hashable


class CredentialRateLimiter:
    """Sliding-window ceiling on vendor calls, one window per credential set.

    Unlike a request-rejecting limiter, ``acquire`` waits until a slot frees
    up: vendor calls are queued, never dropped.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[Hashable, deque[float]] = {}
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def _prune(self, bucket: deque[float], now: float) -> None:
        while bucket and bucket[0] <= now - self.window_seconds:
            bucket.popleft()

    def try_acquire(self, key: Hashable) -> bool:
        now = self._clock()
        bucket = self._requests.setdefault(key, deque())
        self._prune(bucket, now)
        if len(bucket) >= self.max_requests:
            return False
        bucket.append(now)
        return True

    async def acquire(self, key: Hashable) -> None:
        if self.max_requests <= 0:
            return
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            while not self.try_acquire(key):
                bucket = self._requests[key]
                wait = bucket[0] + self.window_seconds - self._clock()
                await asyncio.sleep(max(wait, 0.01))
