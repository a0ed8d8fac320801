# src/gatehouse/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import challenge_router, session_router

__all__ = [
    "challenge_router",
    "session_router",
]
