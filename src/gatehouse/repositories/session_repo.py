"""Data access helpers for client sessions.

The repository is the durable identity store: insert, point lookup by token,
indexed lookup by owner, and conditional (version-checked) updates. Every
method opens its own short transaction so one repository instance can be
shared across request-handling threads.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gatehouse.core.errors import StoreConflictError, StoreUnavailableError
from gatehouse.models.client_session import OWNER_AUTHENTICATED, ClientSession

logger = logging.getLogger(__name__)

__all__ = ["SessionRecord", "SessionRepository"]

# A mutation returns the column values to write, or None to leave the row untouched.
Mutation = Callable[["SessionRecord"], Mapping[str, Any] | None]


@dataclass(frozen=True)
class SessionRecord:
    """Detached snapshot of a ``client_session`` row."""

    token: str
    owner_kind: str
    owner_key: str
    request_count: int
    request_limit: int
    expires_at: datetime
    created_at: datetime
    is_active: bool = True
    version: int = 0
    window_started_at: datetime | None = None

    @classmethod
    def from_row(cls, row: ClientSession) -> SessionRecord:
        return cls(**{f.name: getattr(row, f.name) for f in fields(cls)})

    @property
    def is_authenticated(self) -> bool:
        return self.owner_kind == OWNER_AUTHENTICATED

    def is_live(self, now: datetime) -> bool:
        """Return True if the session is active and not yet expired."""
        return self.is_active and self.expires_at > now


class SessionRepository:
    """Thin wrapper around database access for client sessions."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize the repository with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._session_factory() as db, db.begin():
                yield db
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"session store error: {exc}") from exc

    def insert(self, record: SessionRecord) -> SessionRecord:
        """Persist a new session row."""
        if record.window_started_at is None:
            record = replace(record, window_started_at=record.created_at)
        with self._transaction() as db:
            db.add(ClientSession(**{f.name: getattr(record, f.name) for f in fields(record)}))
        return record

    def get(self, token: str) -> SessionRecord | None:
        """Return the session for ``token`` regardless of its state."""
        with self._transaction() as db:
            row = db.get(ClientSession, token)
            return SessionRecord.from_row(row) if row is not None else None

    def list_live_by_owner(
        self, owner_kind: str, owner_key: str, now: datetime
    ) -> list[SessionRecord]:
        """Return active, unexpired sessions for an owner, oldest first."""
        with self._transaction() as db:
            rows = db.execute(
                select(ClientSession)
                .where(
                    ClientSession.owner_kind == owner_kind,
                    ClientSession.owner_key == owner_key,
                    ClientSession.is_active.is_(True),
                    ClientSession.expires_at > now,
                )
                .order_by(ClientSession.created_at.asc(), ClientSession.token.asc())
            ).scalars()
            return [SessionRecord.from_row(row) for row in rows]

    def find_live_by_owner(
        self, owner_kind: str, owner_key: str, now: datetime
    ) -> SessionRecord | None:
        """Return the oldest live session for an owner, if any."""
        live = self.list_live_by_owner(owner_kind, owner_key, now)
        return live[0] if live else None

    def conditional_update(
        self, token: str, expected_version: int, values: Mapping[str, Any]
    ) -> bool:
        """Apply ``values`` only if the row is still at ``expected_version``.

        Returns:
            True if the row was updated; False on a version mismatch or a missing row.
        """
        with self._transaction() as db:
            result = db.execute(
                update(ClientSession)
                .where(
                    ClientSession.token == token,
                    ClientSession.version == expected_version,
                )
                .values(**values, version=expected_version + 1)
            )
            return result.rowcount == 1

    def update_with_retry(self, token: str, mutate: Mutation) -> SessionRecord | None:
        """Read, mutate and conditionally write a row, retrying once on conflict.

        Args:
            token: Session to update.
            mutate: Computes the values to write from the current snapshot.

        Returns:
            The updated snapshot, the unchanged snapshot when ``mutate`` returns
            None, or None when the row does not exist.

        Raises:
            StoreConflictError: If the conditional write loses twice.
        """
        for attempt in (1, 2):
            record = self.get(token)
            if record is None:
                return None
            values = mutate(record)
            if values is None:
                return record
            if self.conditional_update(token, record.version, values):
                return replace(record, **values, version=record.version + 1)
            logger.debug("Write conflict on session %s (attempt %d)", token[:8], attempt)
        raise StoreConflictError(f"session {token[:8]} changed concurrently twice")

    def increment_count(self, token: str, now: datetime) -> int | None:
        """Atomically add one to a live session's request count.

        The read and the write are a single ``UPDATE ... RETURNING`` statement,
        so concurrent callers each observe a distinct count.

        Returns:
            The count after the increment, or None if the session is missing,
            inactive or expired.
        """
        with self._transaction() as db:
            return db.execute(
                update(ClientSession)
                .where(
                    ClientSession.token == token,
                    ClientSession.is_active.is_(True),
                    ClientSession.expires_at > now,
                )
                .values(request_count=ClientSession.request_count + 1)
                .returning(ClientSession.request_count)
            ).scalar_one_or_none()

    def reset_windows(self, cutoff: datetime, now: datetime, limit: int = 100) -> list[str]:
        """Zero the count of up to ``limit`` live sessions whose window began before ``cutoff``.

        Reset rows get ``window_started_at = now`` so they drop out of the next batch.

        Returns:
            Tokens of the sessions that were reset.
        """
        due = (
            ClientSession.is_active.is_(True),
            ClientSession.expires_at > now,
            ClientSession.window_started_at <= cutoff,
        )
        with self._transaction() as db:
            tokens = list(
                db.execute(select(ClientSession.token).where(*due).limit(limit)).scalars()
            )
            if not tokens:
                return []
            db.execute(
                update(ClientSession)
                .where(ClientSession.token.in_(tokens), *due)
                .values(request_count=0, window_started_at=now)
            )
            return tokens

    def delete(self, token: str) -> bool:
        """Delete a session row; return True if one existed."""
        with self._transaction() as db:
            result = db.execute(delete(ClientSession).where(ClientSession.token == token))
            return result.rowcount > 0

    def delete_expired(self, now: datetime, limit: int = 100) -> int:
        """Delete up to ``limit`` sessions whose expiry is before ``now``."""
        with self._transaction() as db:
            tokens = list(
                db.execute(
                    select(ClientSession.token)
                    .where(ClientSession.expires_at < now)
                    .limit(limit)
                ).scalars()
            )
            if not tokens:
                return 0
            db.execute(delete(ClientSession).where(ClientSession.token.in_(tokens)))
            return len(tokens)
