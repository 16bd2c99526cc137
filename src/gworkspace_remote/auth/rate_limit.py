"""Fixed-window rate limiting keyed by client identity.

Counters live in process memory. Behind several server instances each one
counts independently, so the effective global limit is a multiple of the
configured one.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class RateLimitEntry:
    """Request counter for one identity within one window."""

    count: int
    reset_at: float


class RateLimiter:
    """Allow at most ``limit`` requests per identity in each window."""

    def __init__(
        self,
        limit: int = 100,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def allow(self, identity: str) -> bool:
        """Record one request for ``identity`` and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(identity)
            if entry is None or now > entry.reset_at:
                self._entries[identity] = RateLimitEntry(count=1, reset_at=now + self.window_seconds)
                return True
            entry.count += 1
            return entry.count <= self.limit

    def get_entry(self, identity: str) -> RateLimitEntry | None:
        with self._lock:
            return self._entries.get(identity)
