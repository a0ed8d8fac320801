"""Per-process TTL cache shared by request-handling threads.

Entries are overwritten per key and expire after a bounded time-to-live.
Expired entries are never returned; :meth:`LocalCache.sweep` reclaims them.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from threading import Lock
from typing import Generic, TypeVar

V = TypeVar("V")


class LocalCache(Generic[V]):
    """Small thread-safe cache with a default time-to-live.

    Args:
        ttl_seconds: Default lifetime of an entry.
        clock: Monotonic time source; injectable for tests.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, tuple[V, float]] = {}
        self._lock = Lock()

    def get(self, key: str) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expiry = entry
            if expiry <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: V, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else float(ttl_seconds)
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def pop(self, key: str) -> V | None:
        with self._lock:
            entry = self._entries.pop(key, None)
        return entry[0] if entry else None

    def sweep(self) -> int:
        """Drop expired entries and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expiry) in self._entries.items() if expiry <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
