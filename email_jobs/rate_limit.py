"""Sliding window limiter on job starts."""

import time
from collections import deque
from typing import Callable, Deque


class RateLimiter:
    """
    Bounds how many jobs a pool may start per time window.

    ``delay()`` reports how long until a start is allowed and ``record()``
    stamps one. They are separate so a claim that finds no job does not use up a slot.
    A limiter with ``max_jobs <= 0`` never blocks.
    """

    def __init__(
        self,
        max_jobs: int,
        duration_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_jobs = max_jobs
        self.duration_seconds = duration_seconds
        self._clock = clock
        self._starts: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        window_start = now - self.duration_seconds
        while self._starts and self._starts[0] <= window_start:
            self._starts.popleft()

    def delay(self) -> float:
        """Seconds until the next start is allowed, 0 if allowed now."""
        if self.max_jobs <= 0:
            return 0.0
        now = self._clock()
        self._prune(now)
        if len(self._starts) < self.max_jobs:
            return 0.0
        return max(0.0, self._starts[0] + self.duration_seconds - now)

    def record(self) -> None:
        if self.max_jobs <= 0:
            return
        self._starts.append(self._clock())
