# src/gatehouse/api/v1/endpoints/session.py
"""Session registration, account linking and quota status."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, HTTPException, Request, Response, status

from gatehouse.api.v1.dependencies import (
    SESSION_COOKIE,
    ChallengeGateDep,
    CurrentAccountDep,
    OptionalAccountDep,
    SessionRegistryDep,
    SessionTokenDep,
    hashed_client_address,
)
from gatehouse.core.errors import StoreError
from gatehouse.core.settings import settings
from gatehouse.db.time import utcnow
from gatehouse.models.client_session import OWNER_ANONYMOUS, OWNER_AUTHENTICATED
from gatehouse.schemas.session import (
    SessionLinkResponse,
    SessionRegisterResponse,
    SessionStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/session", tags=["session"])


def set_session_cookie(response: Response, token: str, expires_at: datetime) -> None:
    """Write the session cookie with a lifetime matching the session's expiry."""
    max_age = max(0, int((expires_at - utcnow()).total_seconds()))
    response.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        max_age=max_age,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )


@router.post("/register", response_model=SessionRegisterResponse)
def register_session(
    request: Request,
    response: Response,
    registry: SessionRegistryDep,
    account_id: OptionalAccountDep,
) -> SessionRegisterResponse:
    """Issue or reuse the caller's session and set the session cookie."""
    if account_id is not None:
        owner_kind, owner_key = OWNER_AUTHENTICATED, account_id
    else:
        owner_kind, owner_key = OWNER_ANONYMOUS, hashed_client_address(request)

    try:
        record = registry.get_or_create(owner_kind, owner_key)  # type: ignore[arg-type]
    except StoreError as err:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session service unavailable",
        ) from err

    set_session_cookie(response, record.token, record.expires_at)
    return SessionRegisterResponse(
        is_authenticated=record.is_authenticated,
        request_limit=record.request_limit,
        expires_at=record.expires_at,
    )


@router.post("/link", response_model=SessionLinkResponse)
def link_session(
    response: Response,
    registry: SessionRegistryDep,
    account_id: CurrentAccountDep,
    token: SessionTokenDep = None,
) -> SessionLinkResponse:
    """Attribute the current session to the signed-in account."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="No session token found"
        )
    try:
        linked = registry.link_to_owner(token, OWNER_AUTHENTICATED, account_id)
    except StoreError as err:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session service unavailable",
        ) from err
    if linked is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session token",
        )

    changed = linked != token
    if changed:
        session_status = registry.status(linked)
        if session_status.expires_at is not None:
            set_session_cookie(response, linked, session_status.expires_at)
    return SessionLinkResponse(token_changed=changed)


@router.get("/status", response_model=SessionStatusResponse)
def session_status(
    _challenge: ChallengeGateDep,
    registry: SessionRegistryDep,
    token: SessionTokenDep = None,
) -> SessionStatusResponse:
    """Return the quota snapshot for the current session without counting a request.

    Challenged clients must present a verification cookie first.
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Session token required"
        )
    snapshot = registry.status(token)
    if not snapshot.is_valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session token",
        )
    return SessionStatusResponse(
        is_valid=snapshot.is_valid,
        current_count=snapshot.current_count,
        limit=snapshot.limit,
        remaining=snapshot.remaining,
        is_authenticated=snapshot.is_authenticated,
        expires_at=snapshot.expires_at,
    )
