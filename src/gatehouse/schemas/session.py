"""Schemas for session registration and quota status."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class SessionRegisterResponse(BaseModel):
    """Returned after a session cookie has been issued or refreshed."""

    success: bool = True
    is_authenticated: bool = Field(..., description="True if the session belongs to an account")
    request_limit: int = Field(..., description="Requests allowed per window")
    expires_at: datetime


class SessionLinkResponse(BaseModel):
    """Outcome of attributing the current session to the signed-in account."""

    success: bool = True
    token_changed: bool = Field(
        ..., description="True if an existing account session replaced the current one"
    )


class SessionStatusResponse(BaseModel):
    """Quota snapshot for the current session."""

    is_valid: bool
    current_count: int
    limit: int
    remaining: int
    is_authenticated: bool
    expires_at: datetime | None = None
