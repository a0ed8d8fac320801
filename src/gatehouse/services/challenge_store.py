"""Storage for short-lived challenge sessions.

A challenge session records one verification attempt: the risk score that
triggered it, the resources the client must fetch and the resources it has
fetched so far. Records are never persisted to the database; they live in an
in-process map or in Redis and expire on their own. Every read re-checks
``expires_at`` so correctness never depends on a sweep having run.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import lru_cache
from threading import Lock
from typing import Any, Literal, Protocol

from redis.exceptions import RedisError

from gatehouse.core.errors import StoreUnavailableError
from gatehouse.db.time import utcnow
from gatehouse.services.kv import get_redis_client

logger = logging.getLogger(__name__)

ResourceKind = Literal["js", "css"]
RESOURCE_KINDS: tuple[str, ...] = ("js", "css")
KEY_PREFIX = "challenge_session"


@dataclass(frozen=True)
class ChallengeResources:
    """Script and stylesheet paths a challenged client must fetch."""

    js: str
    css: str


@dataclass
class ChallengeSession:
    """One in-flight verification attempt."""

    id: str
    created_at: datetime
    expires_at: datetime
    client_signature: str
    risk_score: int
    is_challenged: bool
    required_resources: ChallengeResources | None = None
    loaded_js: set[str] = field(default_factory=set)
    loaded_css: set[str] = field(default_factory=set)
    verified: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def loaded(self, kind: ResourceKind) -> set[str]:
        return self.loaded_js if kind == "js" else self.loaded_css


class ChallengeStore(Protocol):
    """Contract shared by the in-process and Redis challenge stores."""

    def save(self, session: ChallengeSession) -> None: ...

    def get(self, session_id: str) -> ChallengeSession | None: ...

    def add_loaded(self, session_id: str, kind: ResourceKind, path: str) -> bool: ...

    def mark_verified(self, session_id: str) -> bool: ...

    def delete(self, session_id: str) -> bool: ...

    def sessions(self) -> list[ChallengeSession]: ...

    def count(self) -> int: ...

    def sweep(self, now: datetime | None = None) -> int: ...


def _copy(session: ChallengeSession) -> ChallengeSession:
    return replace(session, loaded_js=set(session.loaded_js), loaded_css=set(session.loaded_css))


class MemoryChallengeStore:
    """In-process challenge store guarded by a single lock."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._sessions: dict[str, ChallengeSession] = {}
        self._lock = Lock()

    def _live(self, session_id: str) -> ChallengeSession | None:
        session = self._sessions.get(session_id)
        if session is None or session.is_expired(self._clock()):
            return None
        return session

    def save(self, session: ChallengeSession) -> None:
        with self._lock:
            self._sessions[session.id] = _copy(session)

    def get(self, session_id: str) -> ChallengeSession | None:
        with self._lock:
            session = self._live(session_id)
            return _copy(session) if session is not None else None

    def add_loaded(self, session_id: str, kind: ResourceKind, path: str) -> bool:
        with self._lock:
            session = self._live(session_id)
            if session is None:
                return False
            session.loaded(kind).add(path)
            return True

    def mark_verified(self, session_id: str) -> bool:
        with self._lock:
            session = self._live(session_id)
            if session is None:
                return False
            session.verified = True
            return True

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def sessions(self) -> list[ChallengeSession]:
        """Return copies of every stored session, expired ones included."""
        with self._lock:
            return [_copy(session) for session in self._sessions.values()]

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def sweep(self, now: datetime | None = None) -> int:
        with self._lock:
            cutoff = now or self._clock()
            expired = [sid for sid, s in self._sessions.items() if s.expires_at < cutoff]
            for sid in expired:
                del self._sessions[sid]
            return len(expired)


class RedisChallengeStore:
    """Challenge store kept in Redis.

    The session record is a JSON document under ``challenge_session:<id>``;
    loaded resources are Redis sets under ``...:js`` and ``...:css`` so
    concurrent beacons never overwrite each other. All keys share the
    record's expiry.
    """

    def __init__(self, client: Any, clock: Callable[[], datetime] = utcnow) -> None:
        self._redis = client
        self._clock = clock

    @staticmethod
    def _key(session_id: str, suffix: str | None = None) -> str:
        base = f"{KEY_PREFIX}:{session_id}"
        return f"{base}:{suffix}" if suffix else base

    def _ttl_ms(self, session: ChallengeSession) -> int:
        return max(1, int((session.expires_at - self._clock()).total_seconds() * 1000))

    @staticmethod
    def _dump(session: ChallengeSession) -> str:
        resources = session.required_resources
        return json.dumps(
            {
                "id": session.id,
                "created_at": session.created_at.isoformat(),
                "expires_at": session.expires_at.isoformat(),
                "client_signature": session.client_signature,
                "risk_score": session.risk_score,
                "is_challenged": session.is_challenged,
                "required_resources": (
                    {"js": resources.js, "css": resources.css} if resources else None
                ),
            }
        )

    @staticmethod
    def _load(raw: bytes | str) -> ChallengeSession:
        data = json.loads(raw)
        resources = data.get("required_resources")
        return ChallengeSession(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            client_signature=data["client_signature"],
            risk_score=int(data["risk_score"]),
            is_challenged=bool(data["is_challenged"]),
            required_resources=ChallengeResources(**resources) if resources else None,
        )

    @staticmethod
    def _members(values: set[Any]) -> set[str]:
        return {v.decode() if isinstance(v, bytes) else str(v) for v in values}

    def save(self, session: ChallengeSession) -> None:
        ttl = self._ttl_ms(session)
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.set(self._key(session.id), self._dump(session), px=ttl)
            if session.verified:
                pipe.set(self._key(session.id, "verified"), "1", px=ttl)
            for kind in RESOURCE_KINDS:
                paths = session.loaded(kind)  # type: ignore[arg-type]
                if paths:
                    pipe.sadd(self._key(session.id, kind), *paths)
                    pipe.pexpire(self._key(session.id, kind), ttl)
            pipe.execute()
        except RedisError as exc:
            raise StoreUnavailableError(f"redis challenge save failed: {exc}") from exc

    def get(self, session_id: str) -> ChallengeSession | None:
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.get(self._key(session_id))
            pipe.smembers(self._key(session_id, "js"))
            pipe.smembers(self._key(session_id, "css"))
            pipe.exists(self._key(session_id, "verified"))
            raw, js, css, verified = pipe.execute()
        except RedisError as exc:
            raise StoreUnavailableError(f"redis challenge read failed: {exc}") from exc
        if raw is None:
            return None
        session = self._load(raw)
        if session.is_expired(self._clock()):
            return None
        session.loaded_js = self._members(js)
        session.loaded_css = self._members(css)
        session.verified = bool(verified)
        return session

    def _pttl(self, session_id: str) -> int | None:
        ttl = int(self._redis.pttl(self._key(session_id)))
        return ttl if ttl > 0 else None

    def add_loaded(self, session_id: str, kind: ResourceKind, path: str) -> bool:
        try:
            ttl = self._pttl(session_id)
            if ttl is None:
                return False
            pipe = self._redis.pipeline(transaction=True)
            pipe.sadd(self._key(session_id, kind), path)
            pipe.pexpire(self._key(session_id, kind), ttl)
            pipe.execute()
        except RedisError as exc:
            raise StoreUnavailableError(f"redis challenge beacon failed: {exc}") from exc
        return True

    def mark_verified(self, session_id: str) -> bool:
        try:
            ttl = self._pttl(session_id)
            if ttl is None:
                return False
            self._redis.set(self._key(session_id, "verified"), "1", px=ttl)
        except RedisError as exc:
            raise StoreUnavailableError(f"redis challenge verify failed: {exc}") from exc
        return True

    def delete(self, session_id: str) -> bool:
        keys = [self._key(session_id)] + [
            self._key(session_id, suffix) for suffix in (*RESOURCE_KINDS, "verified")
        ]
        try:
            return bool(self._redis.delete(*keys))
        except RedisError as exc:
            raise StoreUnavailableError(f"redis challenge delete failed: {exc}") from exc

    def _session_ids(self) -> list[str]:
        ids = []
        for key in self._redis.scan_iter(match=f"{KEY_PREFIX}:*"):
            name = key.decode() if isinstance(key, bytes) else str(key)
            session_id = name[len(KEY_PREFIX) + 1 :]
            if ":" not in session_id:
                ids.append(session_id)
        return ids

    def sessions(self) -> list[ChallengeSession]:
        try:
            ids = self._session_ids()
        except RedisError as exc:
            raise StoreUnavailableError(f"redis challenge scan failed: {exc}") from exc
        found = []
        for session_id in ids:
            session = self.get(session_id)
            if session is not None:
                found.append(session)
        return found

    def count(self) -> int:
        try:
            return len(self._session_ids())
        except RedisError as exc:
            raise StoreUnavailableError(f"redis challenge scan failed: {exc}") from exc

    def sweep(self, now: datetime | None = None) -> int:
        """Redis expires challenge keys on its own; nothing to sweep."""
        return 0


@lru_cache
def get_challenge_store() -> ChallengeStore:
    """Return the process-wide challenge store (Redis when configured)."""
    client = get_redis_client()
    if client is not None:
        return RedisChallengeStore(client)
    logger.info("REDIS_URL not set; challenge sessions are kept in process")
    return MemoryChallengeStore()
