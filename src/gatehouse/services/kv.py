"""Key-value stores used for request counters.

Two implementations share one small interface: :class:`RedisKeyValueStore`
for deployments with a shared Redis, and :class:`MemoryKeyValueStore` for
development and tests. Driver failures surface as
:class:`~gatehouse.core.errors.StoreUnavailableError`; they are never
swallowed here because the caller owns the fail-open/fail-closed policy.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from functools import lru_cache
from threading import Lock
from typing import Any, Protocol

import redis
from redis.exceptions import RedisError

from gatehouse.core.errors import StoreUnavailableError
from gatehouse.core.settings import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class KeyValueStore(Protocol):
    """Minimal key-value contract used by counters and challenge records."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def incr(self, key: str, ttl_seconds: int) -> int: ...

    def exists(self, key: str) -> bool: ...

    def delete(self, key: str) -> bool: ...

    def expire(self, key: str, ttl_seconds: int) -> bool: ...

    def sweep(self) -> int: ...


def _ttl(ttl_seconds: float) -> int:
    return max(1, int(math.ceil(ttl_seconds)))


class RedisKeyValueStore:
    """Key-value store backed by a Redis client."""

    def __init__(self, client: Any) -> None:
        self._redis = client

    def get(self, key: str) -> str | None:
        try:
            value = self._redis.get(key)
        except RedisError as exc:
            raise StoreUnavailableError(f"redis GET failed: {exc}") from exc
        if value is None:
            return None
        return value.decode() if isinstance(value, bytes) else str(value)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._redis.set(key, value, ex=_ttl(ttl_seconds))
        except RedisError as exc:
            raise StoreUnavailableError(f"redis SET failed: {exc}") from exc

    def incr(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment ``key`` and refresh its expiry."""
        try:
            # INCR and EXPIRE run in one MULTI/EXEC transaction
            pipe = self._redis.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, _ttl(ttl_seconds))
            count, _ = pipe.execute()
        except RedisError as exc:
            raise StoreUnavailableError(f"redis INCR failed: {exc}") from exc
        return int(count)

    def exists(self, key: str) -> bool:
        try:
            return bool(self._redis.exists(key))
        except RedisError as exc:
            raise StoreUnavailableError(f"redis EXISTS failed: {exc}") from exc

    def delete(self, key: str) -> bool:
        try:
            return bool(self._redis.delete(key))
        except RedisError as exc:
            raise StoreUnavailableError(f"redis DEL failed: {exc}") from exc

    def expire(self, key: str, ttl_seconds: int) -> bool:
        """Reset the expiry of an existing key; False if the key is gone."""
        try:
            return bool(self._redis.expire(key, _ttl(ttl_seconds)))
        except RedisError as exc:
            raise StoreUnavailableError(f"redis EXPIRE failed: {exc}") from exc

    def sweep(self) -> int:
        """Redis expires keys on its own; nothing to sweep."""
        return 0


class MemoryKeyValueStore:
    """In-process key-value store with per-key expiry.

    Expired keys are invisible to reads immediately and are removed by
    :meth:`sweep`.
    """

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = Lock()

    def _live(self, key: str, now: float) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expiry = entry
        if expiry <= now:
            self._data.pop(key, None)
            return None
        return value

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live(key, self._clock())

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (str(value), self._clock() + _ttl(ttl_seconds))

    def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            current = self._live(key, now)
            count = int(current or 0) + 1
            self._data[key] = (str(count), now + _ttl(ttl_seconds))
            return count

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock()) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            value = self._live(key, now)
            if value is None:
                return False
            self._data[key] = (value, now + _ttl(ttl_seconds))
            return True

    def sweep(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expiry) in self._data.items() if expiry <= now]
            for key in expired:
                del self._data[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


@lru_cache
def get_redis_client() -> Any | None:
    """Return the shared Redis client, or None when REDIS_URL is unset."""
    if not settings.redis_url:
        return None
    return redis.from_url(settings.redis_url)  # type: ignore[no-untyped-call]


@lru_cache
def get_kv_store() -> KeyValueStore | None:
    """Return the configured key-value store.

    Redis when ``REDIS_URL`` is set; an in-process store in development;
    otherwise None, in which case counters live in the database.
    """
    client = get_redis_client()
    if client is not None:
        return RedisKeyValueStore(client)
    if settings.is_development:
        logger.info("REDIS_URL not set; using in-process key-value store")
        return MemoryKeyValueStore()
    return None
