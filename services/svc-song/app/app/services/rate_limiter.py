from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Callable, Deque


class SlidingWindowRateLimiter:
    """
    At most `max_requests` acquisitions in any `window_seconds` interval.
    Single-process; the poller asks `free_slots()` before claiming work.
    """

    def __init__(self, max_requests: int, window_seconds: float, *, clock: Callable[[], float] = time.monotonic):
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self.max_requests = int(max_requests)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._stamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.window_seconds:
            self._stamps.popleft()

    def free_slots(self) -> int:
        self._evict(self._clock())
        return self.max_requests - len(self._stamps)

    def try_acquire(self) -> bool:
        now = self._clock()
        self._evict(now)
        if len(self._stamps) >= self.max_requests:
            return False
        self._stamps.append(now)
        return True

    async def acquire(self) -> None:
        async with self._lock:
            while not self.try_acquire():
                wait = self.window_seconds - (self._clock() - self._stamps[0])
                await asyncio.sleep(max(wait, 0.01))
