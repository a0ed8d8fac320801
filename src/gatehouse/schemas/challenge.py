"""Schemas for the resource-load challenge endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class ResourcePaths(BaseModel):
    """Script and stylesheet paths issued with a challenge."""

    js: str
    css: str


class ChallengePayloadOut(BaseModel):
    """Client-facing challenge: fetch both resources, then verify with ``id``."""

    id: str
    issued_at: datetime
    required_resources: ResourcePaths


class ChallengeRequestResponse(BaseModel):
    """Response to a challenge request. Reasons are never exposed."""

    should_challenge: bool
    session_id: str
    severity: Literal["low", "medium", "high"]
    payload: ChallengePayloadOut | None = None


class ResourceLoadedRequest(BaseModel):
    """Beacon sent by the client after fetching a challenge resource."""

    session_id: str = Field(..., min_length=1)
    resource_path: str = Field(..., min_length=1)
    type: Literal["js", "css"]


class ResourceLoadedResponse(BaseModel):
    success: bool = True
    message: str


class VerifyResourcesRequest(BaseModel):
    """Check loaded resources; defaults to the ones issued with the session."""

    session_id: str = Field(..., min_length=1)
    expected_resources: ResourcePaths | None = None


class VerifyResourcesResponse(BaseModel):
    passed: bool
    js_loaded: bool
    css_loaded: bool
    risk_score: int | None = None
    requires_captcha: bool | None = None


class PuzzleRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


class PuzzleOut(BaseModel):
    """One proof-of-work puzzle: find a nonce for ``salt`` at ``target_bits``."""

    token: str
    salt: str
    target_bits: int


class PuzzleResponse(BaseModel):
    session_id: str
    puzzles: list[PuzzleOut]
    expires_at: datetime


class VerifyChallengeRequest(BaseModel):
    """Final step: the issued puzzle tokens with one nonce per token, in order."""

    session_id: str = Field(..., min_length=1)
    tokens: list[str] = Field(..., min_length=1)
    solutions: list[int] = Field(..., min_length=1)


class VerifyChallengeResponse(BaseModel):
    success: bool = True


class ChallengeStatsOut(BaseModel):
    total_sessions: int
    active_sessions: int
    challenged_sessions: int
    verified_sessions: int
    average_risk_score: float


class ChallengeStatsResponse(BaseModel):
    status: str = "ok"
    timestamp: datetime
    stats: ChallengeStatsOut


class ChallengeSessionQuery(BaseModel):
    session_id: str = Field(..., min_length=1)


class ChallengeSessionDetail(BaseModel):
    """Admin view of one challenge session."""

    session_id: str
    created_at: datetime
    expires_at: datetime
    client_signature: str
    risk_score: int
    is_challenged: bool
    verified: bool
    required_resources: ResourcePaths | None = None
    loaded_js: list[str]
    loaded_css: list[str]
