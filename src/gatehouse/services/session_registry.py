"""Session identities and request quotas.

The registry issues one active session per owner (a salted hash of the client
address, or an account id), counts requests against the session's quota and
re-keys anonymous sessions when they become attributable to an account.

Reads go through a per-process cache of live session snapshots before falling
back to the durable repository. Only positive snapshots are cached, so a
session that looks invalid is always re-checked against the store. Increments
always reach the durable counter.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Literal

from gatehouse.core.errors import StoreError
from gatehouse.core.settings import Settings, settings
from gatehouse.db.session import get_sessionmaker
from gatehouse.db.time import utcnow
from gatehouse.models.client_session import OWNER_ANONYMOUS, OWNER_AUTHENTICATED
from gatehouse.repositories.session_repo import SessionRecord, SessionRepository
from gatehouse.services.counters import DatabaseCounter, KeyValueCounter, RequestCounter
from gatehouse.services.kv import get_kv_store
from gatehouse.services.local_cache import LocalCache

logger = logging.getLogger(__name__)

OwnerKind = Literal["anonymous", "authenticated"]
OWNER_KINDS = (OWNER_ANONYMOUS, OWNER_AUTHENTICATED)
TOKEN_BYTES = 32

__all__ = [
    "OwnerKind",
    "QuotaResult",
    "SessionRegistry",
    "SessionStatus",
    "get_session_registry",
]


@dataclass(frozen=True)
class QuotaResult:
    """Outcome of counting one request.

    ``limit`` is the session quota when the session was found, the anonymous
    quota when the store failed before the session could be read, else 0.
    """

    allowed: bool
    current_count: int
    limit: int = 0


@dataclass(frozen=True)
class SessionStatus:
    """Read-only quota snapshot for a session token."""

    is_valid: bool
    current_count: int
    limit: int
    remaining: int
    is_authenticated: bool
    expires_at: datetime | None = None


def _short(token: str) -> str:
    return token[:8]


def _default_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


class SessionRegistry:
    """Issue, reuse, count and link client sessions.

    Args:
        repository: Durable identity store.
        counter: Durable request counter.
        config: Settings providing limits, window and failure policy.
        cache: Per-process cache of live session snapshots.
        clock: Returns the current aware UTC time.
        token_factory: Produces new opaque session tokens.
    """

    def __init__(
        self,
        repository: SessionRepository,
        counter: RequestCounter,
        *,
        config: Settings = settings,
        cache: LocalCache[SessionRecord] | None = None,
        clock: Callable[[], datetime] = utcnow,
        token_factory: Callable[[], str] = _default_token,
    ) -> None:
        self._repository = repository
        self._counter = counter
        self._config = config
        self._cache: LocalCache[SessionRecord] = cache or LocalCache(
            config.local_cache_ttl_seconds
        )
        self._clock = clock
        self._token_factory = token_factory

    @property
    def cache(self) -> LocalCache[SessionRecord]:
        return self._cache

    # --- Identity -----------------------------------------------------------------

    def get_or_create(
        self,
        owner_kind: OwnerKind,
        owner_key: str,
        window_seconds: int | None = None,
    ) -> SessionRecord:
        """Return the owner's active session, creating one if needed.

        Reusing a session extends ``expires_at`` to ``now + window`` (never
        shortening it) and keeps the request count. The counter's own expiry
        follows the session's. The count itself restarts only when the quota
        window rolls over (see :meth:`reset_request_counts`).

        Raises:
            ValueError: For an unknown owner kind or an empty owner key.
            StoreError: If the store fails and the policy is fail-closed.
        """
        if owner_kind not in OWNER_KINDS:
            raise ValueError(f"Unknown owner kind: {owner_kind!r}")
        if not owner_key:
            raise ValueError("owner_key must not be empty")

        window = int(window_seconds or self._config.session_window_seconds)
        now = self._clock()
        expires_at = now + timedelta(seconds=window)

        try:
            existing = self._repository.find_live_by_owner(owner_kind, owner_key, now)
            if existing is not None:
                return self._extend(existing, expires_at, now)

            record = SessionRecord(
                token=self._token_factory(),
                owner_kind=owner_kind,
                owner_key=owner_key,
                request_count=0,
                request_limit=self._config.request_limit_for(owner_kind),
                expires_at=expires_at,
                created_at=now,
                window_started_at=now,
            )
            self._repository.insert(record)
            winner = self._settle_duplicates(record, now)
        except StoreError as exc:
            if not self._config.fail_open:
                logger.error("Session store unavailable; refusing to issue session: %s", exc)
                raise
            logger.warning("Session store unavailable; issuing unsaved session: %s", exc)
            return SessionRecord(
                token=self._token_factory(),
                owner_kind=owner_kind,
                owner_key=owner_key,
                request_count=0,
                request_limit=self._config.request_limit_for(owner_kind),
                expires_at=expires_at,
                created_at=now,
            )

        self._cache.set(winner.token, winner)
        if winner.token == record.token:
            logger.info("Issued %s session %s", owner_kind, _short(record.token))
        return winner

    def _extend(self, record: SessionRecord, expires_at: datetime, now: datetime) -> SessionRecord:
        def push_expiry(current: SessionRecord) -> dict[str, datetime] | None:
            if current.expires_at >= expires_at:
                return None
            return {"expires_at": expires_at}

        updated = self._repository.update_with_retry(record.token, push_expiry)
        if updated is None or not updated.is_live(now):
            # Swept or deactivated between lookup and write; start over.
            return self.get_or_create(
                record.owner_kind,  # type: ignore[arg-type]
                record.owner_key,
                int((expires_at - now).total_seconds()),
            )
        self._counter.extend(updated, updated.expires_at)
        self._cache.set(updated.token, updated)
        return updated

    def _settle_duplicates(self, created: SessionRecord, now: datetime) -> SessionRecord:
        """Keep a single active session when two creators raced for one owner."""
        live = self._repository.list_live_by_owner(created.owner_kind, created.owner_key, now)
        if not live:
            return created
        winner = live[0]
        for loser in live[1:]:
            self._deactivate(loser.token)
            logger.info(
                "Deactivated duplicate session %s for owner in favor of %s",
                _short(loser.token),
                _short(winner.token),
            )
        return winner

    def _deactivate(self, token: str) -> None:
        self._repository.update_with_retry(
            token, lambda current: {"is_active": False} if current.is_active else None
        )
        self._cache.pop(token)

    def link_to_owner(self, token: str, owner_kind: OwnerKind, owner_key: str) -> str | None:
        """Attribute a session to an owner, typically an account after sign-in.

        If the owner already has a different active session, ``token`` is
        deactivated and the existing session's token is returned. Otherwise
        ``token`` is re-keyed in place with the owner's quota, and any session
        a concurrent link produced for the same owner is settled so only the
        oldest stays active.

        Returns:
            The token the caller should use from now on, or None when
            ``token`` is unknown, expired or inactive.
        """
        if owner_kind not in OWNER_KINDS:
            raise ValueError(f"Unknown owner kind: {owner_kind!r}")
        now = self._clock()
        record = self._repository.get(token)
        if record is None or not record.is_live(now):
            return None

        existing = self._repository.find_live_by_owner(owner_kind, owner_key, now)
        if existing is not None and existing.token != token:
            self._deactivate(token)
            logger.info(
                "Session %s superseded by existing %s session %s",
                _short(token),
                owner_kind,
                _short(existing.token),
            )
            return existing.token

        limit = self._config.request_limit_for(owner_kind)

        def rekey(current: SessionRecord) -> dict[str, object] | None:
            if (
                current.owner_kind == owner_kind
                and current.owner_key == owner_key
                and current.request_limit == limit
            ):
                return None
            return {"owner_kind": owner_kind, "owner_key": owner_key, "request_limit": limit}

        updated = self._repository.update_with_retry(token, rekey)
        self._cache.pop(token)
        if updated is None or not updated.is_live(now):
            return None
        winner = self._settle_duplicates(updated, now)
        if winner.token != token:
            logger.info(
                "Session %s lost a concurrent link to %s session %s",
                _short(token),
                owner_kind,
                _short(winner.token),
            )
            return winner.token
        logger.info("Linked session %s to %s owner", _short(token), owner_kind)
        return winner.token

    def revoke(self, token: str) -> bool:
        """Delete a session and its counter."""
        self._cache.pop(token)
        deleted = self._repository.delete(token)
        self._counter.discard(token)
        return deleted

    # --- Quotas -------------------------------------------------------------------

    def _lookup(self, token: str, now: datetime) -> SessionRecord | None:
        cached = self._cache.get(token)
        if cached is not None and cached.is_live(now):
            logger.debug("Session cache hit for %s", _short(token))
            return cached
        record = self._repository.get(token)
        if record is not None and record.is_live(now):
            self._cache.set(token, record)
        else:
            self._cache.pop(token)
        return record

    def _store_failure(
        self, operation: str, token: str, exc: Exception, limit: int | None = None
    ) -> QuotaResult:
        if limit is None:
            limit = self._config.anonymous_request_limit
        if self._config.fail_open:
            logger.warning(
                "%s failed for session %s; allowing request (development policy): %s",
                operation,
                _short(token),
                exc,
            )
            return QuotaResult(allowed=True, current_count=0, limit=limit)
        logger.error(
            "%s failed for session %s; denying request: %s", operation, _short(token), exc
        )
        return QuotaResult(allowed=False, current_count=0, limit=limit)

    def increment_and_check(self, token: str | None) -> QuotaResult:
        """Count one request for ``token`` and compare it to the session quota.

        The count keeps rising past the limit, so the N-th call observes N.
        Unknown, expired and inactive sessions are denied without counting.
        """
        if not token:
            return QuotaResult(allowed=False, current_count=0)
        now = self._clock()
        record: SessionRecord | None = None
        try:
            record = self._lookup(token, now)
            if record is None:
                return QuotaResult(allowed=False, current_count=0)
            if not record.is_live(now):
                return QuotaResult(False, self._counter.current(record), record.request_limit)
            count = self._counter.increment(record)
        except StoreError as exc:
            limit = record.request_limit if record is not None else None
            return self._store_failure("Quota check", token, exc, limit)

        if count is None:
            self._cache.pop(token)
            return QuotaResult(allowed=False, current_count=0)
        allowed = count <= record.request_limit
        if not allowed:
            logger.warning(
                "Session %s exceeded request limit (%d > %d)",
                _short(token),
                count,
                record.request_limit,
            )
        else:
            self._cache.set(token, replace(record, request_count=count))
        return QuotaResult(allowed, count, record.request_limit)

    def validate(self, token: str | None) -> bool:
        """Return True if ``token`` names an active, unexpired session."""
        if not token:
            return False
        now = self._clock()
        try:
            record = self._lookup(token, now)
        except StoreError as exc:
            return self._store_failure("Session validation", token, exc).allowed
        return record is not None and record.is_live(now)

    def status(self, token: str | None) -> SessionStatus:
        """Return the quota snapshot for ``token`` without counting a request."""
        default_limit = self._config.anonymous_request_limit
        if not token:
            return SessionStatus(False, 0, default_limit, 0, False)
        now = self._clock()
        try:
            record = self._lookup(token, now)
            if record is None:
                return SessionStatus(False, 0, default_limit, 0, False)
            count = self._counter.current(record)
        except StoreError as exc:
            logger.warning("Status lookup failed for session %s: %s", _short(token), exc)
            return SessionStatus(False, 0, default_limit, 0, False)

        if not record.is_live(now):
            return SessionStatus(
                False, count, record.request_limit, 0, record.is_authenticated, record.expires_at
            )
        return SessionStatus(
            is_valid=True,
            current_count=count,
            limit=record.request_limit,
            remaining=max(0, record.request_limit - count),
            is_authenticated=record.is_authenticated,
            expires_at=record.expires_at,
        )

    # --- Housekeeping -------------------------------------------------------------

    def sweep_expired(self, now: datetime | None = None, batch_size: int | None = None) -> int:
        """Delete expired sessions in batches and return how many were removed."""
        cutoff = now or self._clock()
        limit = batch_size or self._config.sweep_batch_size
        total = 0
        while True:
            deleted = self._repository.delete_expired(cutoff, limit)
            total += deleted
            if deleted < limit:
                break
        if total:
            logger.debug("Deleted %d expired sessions", total)
        return total

    def reset_request_counts(
        self, now: datetime | None = None, batch_size: int | None = None
    ) -> int:
        """Restart the quota of every live session whose window has elapsed.

        Each session's window is ``QUOTA_WINDOW_SECONDS`` long and starts when
        the session is issued or last reset. Rows are reset in batches; the
        key-value counter and cached snapshot of each reset session are dropped.

        Returns:
            How many sessions were reset.
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self._config.quota_window_seconds)
        limit = batch_size or self._config.sweep_batch_size
        total = 0
        while True:
            tokens = self._repository.reset_windows(cutoff, now, limit)
            for token in tokens:
                self._counter.discard(token)
                self._cache.pop(token)
            total += len(tokens)
            if len(tokens) < limit:
                break
        if total:
            logger.info("Reset request counts for %d sessions", total)
        return total


def build_counter(repository: SessionRepository) -> RequestCounter:
    """Pick the key-value counter when a store is configured, else the database."""
    store = get_kv_store()
    if store is not None:
        return KeyValueCounter(store)
    return DatabaseCounter(repository)


@lru_cache
def get_session_registry() -> SessionRegistry:
    """Return the process-wide session registry.

    Raises:
        ConfigurationError: If the runtime configuration is unsafe.
    """
    settings.validate_runtime()
    repository = SessionRepository(get_sessionmaker())
    return SessionRegistry(repository, build_counter(repository))
