"""Repositories wrapping durable storage."""

from .session_repo import SessionRecord, SessionRepository

__all__ = ["SessionRecord", "SessionRepository"]
