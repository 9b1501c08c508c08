"""In-memory sliding window rate limiter implementation."""

from __future__ import annotations

import math
import time
from collections import deque
from threading import Lock
from typing import Callable, DefaultDict, Deque


class SlidingWindowRateLimiter:
    """Thread-safe sliding window limiter keyed by actor."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise limiter parameters and per-key storage."""
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._events: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def _prune(self, queue: Deque[float], now: float) -> None:
        while queue and now - queue[0] >= self._window:
            queue.popleft()

    def allow(self, key: str) -> bool:
        """Return ``True`` and record the event when ``key`` is under its limit."""
        now = self._clock()
        with self._lock:
            queue = self._events[key]
            self._prune(queue, now)
            if len(queue) >= self._max_requests:
                return False
            queue.append(now)
            return True

    def retry_after(self, key: str) -> int:
        """Seconds until ``key`` regains a slot; ``0`` when one is free now."""
        now = self._clock()
        with self._lock:
            queue = self._events.get(key)
            if not queue:
                return 0
            self._prune(queue, now)
            if len(queue) < self._max_requests:
                return 0
            return max(1, math.ceil(self._window - (now - queue[0])))
