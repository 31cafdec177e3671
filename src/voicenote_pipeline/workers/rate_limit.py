"""Sliding-window rate limiter shared by the workers of one pool."""

import asyncio
import time
from collections import deque
from collections.abc import Callable


class SlidingWindowRateLimiter:
    """
    Allow at most ``max_events`` acquisitions in any ``window`` seconds.

    Workers acquire a slot before reserving a job and refund it when no job
    was delivered, so idle polling does not consume the budget.
    """

    def __init__(
        self,
        max_events: int,
        window: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_events < 1:
            raise ValueError("max_events must be >= 1")
        if window <= 0:
            raise ValueError("window must be > 0")
        self.max_events = max_events
        self.window = window
        self._clock = clock
        self._events: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._events and now - self._events[0] >= self.window:
            self._events.popleft()

    @property
    def available(self) -> int:
        self._prune(self._clock())
        return self.max_events - len(self._events)

    def try_acquire(self) -> bool:
        now = self._clock()
        self._prune(now)
        if len(self._events) >= self.max_events:
            return False
        self._events.append(now)
        return True

    def wait_time(self) -> float:
        """Seconds until the next slot frees up; 0 when one is free now."""
        now = self._clock()
        self._prune(now)
        if len(self._events) < self.max_events:
            return 0.0
        return max(self.window - (now - self._events[0]), 0.0)

    async def acquire(self) -> None:
        async with self._lock:
            while not self.try_acquire():
                await asyncio.sleep(self.wait_time() or 0.01)

    def refund(self) -> None:
        """Give back the most recent slot."""
        if self._events:
            self._events.pop()
