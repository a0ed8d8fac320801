# src/gatehouse/models/client_session.py
"""Durable record of a rate-limited client identity."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gatehouse.db.session import Base
from gatehouse.db.time import UTCDateTime, utcnow

OWNER_ANONYMOUS = "anonymous"
OWNER_AUTHENTICATED = "authenticated"


class ClientSession(Base):
    """Quota-tracked identity keyed by a hashed address or an account id.

    ``version`` guards conditional updates of ownership and expiry. Request
    counts change through single atomic statements that do not touch it.
    ``window_started_at`` marks the start of the current quota window.
    """

    __tablename__ = "client_session"
    __table_args__ = (
        Index("ix_client_session_owner", "owner_kind", "owner_key", "is_active"),
        Index("ix_client_session_expires_at", "expires_at"),
    )

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    owner_key: Mapped[str] = mapped_column(Text, nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    request_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    window_started_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    @property
    def is_authenticated(self) -> bool:
        """Return True if the session belongs to an account."""
        return self.owner_kind == OWNER_AUTHENTICATED

    def is_live(self, now: datetime) -> bool:
        """Return True if the session is active and not yet expired."""
        return self.is_active and self.expires_at > now
