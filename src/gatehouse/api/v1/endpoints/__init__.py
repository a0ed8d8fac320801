"""API endpoint modules for version 1."""

from .challenge import router as challenge_router
from .session import router as session_router

__all__ = [
    "challenge_router",
    "session_router",
]
