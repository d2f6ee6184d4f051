"""Per-key sliding window limiter for run submissions."""

from __future__ import annotations

import math
import os
import threading
import time
from collections import defaultdict, deque
from typing import Callable


DEFAULT_RUNS_PER_MINUTE = 120


def runs_per_minute_from_env() -> int:
    raw = str(os.environ.get("STAKETAP_RUN_RATE_LIMIT") or "").strip()
    try:
        return max(1, int(raw)) if raw else DEFAULT_RUNS_PER_MINUTE
    except ValueError:
        return DEFAULT_RUNS_PER_MINUTE


class SlidingWindowLimiter:
    """Allow ``max_requests`` per ``window_seconds`` for each key (player id)."""

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = max(1, int(window_seconds))
        self._clock = clock
        self._buckets: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _trim(self, bucket: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    def check(self, key: str) -> bool:
        """Record a hit and return True, or return False when over the limit."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets[key]
            self._trim(bucket, now)
            if len(bucket) >= self.max_requests:
                return False
            bucket.append(now)
            return True

    def retry_after(self, key: str) -> int:
        """Whole seconds until ``key`` may submit again (0 when it already can)."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0
            self._trim(bucket, now)
            if len(bucket) < self.max_requests:
                return 0
            return max(1, math.ceil(bucket[0] + self.window_seconds - now))

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
