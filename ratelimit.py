# ratelimit.py
"""In-memory fixed-window request limiter, keyed by client address."""

from __future__ import annotations

import time
from typing import Callable, Dict, Tuple

MAX_TRACKED_KEYS = 10_000


class FixedWindowRateLimiter:
    def __init__(self, limit: int, window: float, clock: Callable[[], float] = time.monotonic) -> None:
        if limit < 1 or window <= 0:
            raise ValueError("limit must be >= 1 and window > 0")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._hits: Dict[str, Tuple[float, int]] = {}

    def hit(self, key: str) -> bool:
        """Count one request for `key`; False once the window's limit is exceeded."""
        now = self._clock()
        start, count = self._hits.get(key, (now, 0))
        if now - start >= self.window:
            start, count = now, 0
        count += 1
        self._hits[key] = (start, count)
        if len(self._hits) > MAX_TRACKED_KEYS:
            self._prune(now)
        return count <= self.limit

    def retry_after(self, key: str) -> int:
        """Seconds until `key`'s window rolls over."""
        entry = self._hits.get(key)
        if entry is None:
            return 0
        return max(0, int(entry[0] + self.window - self._clock()) + 1)

    def _prune(self, now: float) -> None:
        expired = [k for k, (start, _) in self._hits.items() if now - start >= self.window]
        for k in expired:
            del self._hits[k]
