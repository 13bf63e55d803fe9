"""
Rate limiting for Cardgate.

Sliding window limiter keyed by client (reader id or IP), applied
per endpoint group so a noisy reader cannot starve verification for
the rest of the site.
"""

import time
import threading
from collections import defaultdict, deque
from typing import Deque, Dict, Optional
from dataclasses import dataclass


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    retry_after: Optional[float] = None


class RateLimiter:
    """
    Sliding window rate limiter.

    Thread-safe; one deque of hit timestamps per key. Keys whose window
    has drained are dropped on the next sweep.
    """

    def __init__(self, rpm: int, window_seconds: int = 60, sweep_every: int = 1000):
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._sweep_every = sweep_every
        self._calls = 0

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitResult:
        now = time.monotonic()
        window_start = now - self._window

        with self._lock:
            self._calls += 1
            if self._calls % self._sweep_every == 0:
                self._sweep(window_start)

            q = self._hits[key]
            while q and q[0] < window_start:
                q.popleft()

            if len(q) >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    retry_after=max(0.0, q[0] + self._window - now)
                )

            q.append(now)
            return RateLimitResult(allowed=True, remaining=self._limit - len(q))

    def _sweep(self, window_start: float) -> None:
        for key in [k for k, q in self._hits.items() if not q or q[-1] < window_start]:
            del self._hits[key]

    def reset(self, key: Optional[str] = None) -> None:
        """Reset counters for one key, or all keys."""
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()
