"""Request counters for session quotas.

A counter is the durable tier of quota enforcement. Increments are never
short-circuited by the per-process cache, so every call is counted exactly
once across all processes.

- :class:`KeyValueCounter` uses the atomic increment of the key-value store.
- :class:`DatabaseCounter` uses an atomic ``UPDATE ... RETURNING`` on the
  session row.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from gatehouse.db.time import utcnow
from gatehouse.repositories.session_repo import SessionRecord, SessionRepository
from gatehouse.services.kv import KeyValueStore

logger = logging.getLogger(__name__)

COUNTER_KEY_PREFIX = "session_requests"


class RequestCounter(Protocol):
    """Atomic per-session request counter."""

    def increment(self, record: SessionRecord) -> int | None: ...

    def current(self, record: SessionRecord) -> int: ...

    def extend(self, record: SessionRecord, expires_at: datetime) -> None: ...

    def discard(self, token: str) -> None: ...


def counter_key(token: str) -> str:
    return f"{COUNTER_KEY_PREFIX}:{token}"


class KeyValueCounter:
    """Counter stored in the key-value store, expiring with its session."""

    def __init__(self, store: KeyValueStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def _remaining_seconds(self, expires_at: datetime) -> int:
        remaining = (expires_at - self._clock()).total_seconds()
        return max(1, int(math.ceil(remaining)))

    def increment(self, record: SessionRecord) -> int:
        ttl = self._remaining_seconds(record.expires_at)
        return self._store.incr(counter_key(record.token), ttl)

    def current(self, record: SessionRecord) -> int:
        value = self._store.get(counter_key(record.token))
        return int(value) if value is not None else 0

    def extend(self, record: SessionRecord, expires_at: datetime) -> None:
        """Keep the counter alive as long as its session."""
        self._store.expire(counter_key(record.token), self._remaining_seconds(expires_at))

    def discard(self, token: str) -> None:
        self._store.delete(counter_key(token))


class DatabaseCounter:
    """Counter stored on the session row itself."""

    def __init__(
        self, repository: SessionRepository, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self._repository = repository
        self._clock = clock

    def increment(self, record: SessionRecord) -> int | None:
        """Increment ``request_count`` in a single statement.

        Returns:
            The new count, or None if the row is gone, inactive or expired.
        """
        return self._repository.increment_count(record.token, self._clock())

    def current(self, record: SessionRecord) -> int:
        return record.request_count

    def extend(self, record: SessionRecord, expires_at: datetime) -> None:
        """The count lives on the row, which already carries the new expiry."""

    def discard(self, token: str) -> None:
        """The count is deleted together with the row."""
