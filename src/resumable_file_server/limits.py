"""Creation-rate limiting."""

import math
import threading
import time
from collections import deque
from typing import Callable

from .errors import RateLimited


class CreationRateLimiter:
    """Sliding-window limiter for new uploads, keyed by client.

    A client may create ``limit`` uploads in a burst; after that a slot frees
    up each time one of its earlier creations leaves the rolling ``window``.
    Only upload creation is counted, never chunk appends.

    Args:
        limit: Creations allowed per key within the window.
        window: Window length in seconds.
        clock: Monotonic time source (overridable for tests).
    """

    def __init__(
        self,
        limit: int,
        window: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._limit = limit
        self._window = window
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> None:
        """Record one creation for ``key``.

        Raises:
            RateLimited: If the key already used its allowance in the window.
        """
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            self._evict(hits, now)
            if len(hits) >= self._limit:
                retry_after = max(1, math.ceil(hits[0] + self._window - now))
                raise RateLimited(retry_after)
            hits.append(now)

    def remaining(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return self._limit
            self._evict(hits, now)
            return max(0, self._limit - len(hits))

    def prune(self) -> None:
        """Forget keys with no creations left in the window."""
        now = self._clock()
        with self._lock:
            for key in list(self._hits):
                self._evict(self._hits[key], now)
                if not self._hits[key]:
                    del self._hits[key]

    def _evict(self, hits: deque[float], now: float) -> None:
        cutoff = now - self._window
        while hits and hits[0] <= cutoff:
            hits.popleft()
