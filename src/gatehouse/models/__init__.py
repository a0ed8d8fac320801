"""SQLAlchemy models for the Gatehouse service."""

from .client_session import OWNER_ANONYMOUS, OWNER_AUTHENTICATED, ClientSession

__all__ = [
    "ClientSession",
    "OWNER_ANONYMOUS", "OWNER_AUTHENTICATED",
]
