# src/gatehouse/api/v1/endpoints/challenge.py
"""Resource-load challenge endpoints.

Deny paths answer with generic messages only; scoring reasons are logged
server-side and never returned to clients.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from gatehouse.api.v1.dependencies import (
    DispatcherDep,
    PowServiceDep,
    RateLimitedTokenDep,
    ResourceTrackerDep,
    SessionTokenDep,
    hashed_client_address,
    require_admin,
)
from gatehouse.core.settings import settings
from gatehouse.db.time import utcnow
from gatehouse.schemas.challenge import (
    ChallengePayloadOut,
    ChallengeRequestResponse,
    ChallengeSessionDetail,
    ChallengeSessionQuery,
    ChallengeStatsOut,
    ChallengeStatsResponse,
    PuzzleOut,
    PuzzleRequest,
    PuzzleResponse,
    ResourceLoadedRequest,
    ResourceLoadedResponse,
    ResourcePaths,
    VerifyChallengeRequest,
    VerifyChallengeResponse,
    VerifyResourcesRequest,
    VerifyResourcesResponse,
)
from gatehouse.services.challenge_store import ChallengeSession
from gatehouse.services.dispatcher import ChallengeDispatcher
from gatehouse.services.verification import VERIFICATION_COOKIE, create_verification_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/challenge", tags=["challenge"])

AdminDep = Annotated[None, Depends(require_admin)]


def _pending_challenge(dispatcher: ChallengeDispatcher, session_id: str) -> ChallengeSession:
    session = dispatcher.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    if not session.is_challenged:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="No challenge pending"
        )
    return session


@router.post("/request", response_model=ChallengeRequestResponse)
def request_challenge(
    request: Request,
    dispatcher: DispatcherDep,
    token: SessionTokenDep = None,
) -> ChallengeRequestResponse:
    """Score the caller's headers and issue a challenge if warranted."""
    client_signature = request.headers.get("user-agent", "")
    if not settings.anti_abuse_enabled:
        result = dispatcher.admit(client_signature, dict(request.headers))
        return ChallengeRequestResponse(
            should_challenge=False, session_id=result.session_id, severity="low"
        )

    identity = token or hashed_client_address(request)
    result = dispatcher.dispatch(client_signature, dict(request.headers), identity=identity)
    payload = None
    if result.payload is not None:
        payload = ChallengePayloadOut(
            id=result.payload.id,
            issued_at=result.payload.issued_at,
            required_resources=ResourcePaths(
                js=result.payload.required_resources.js,
                css=result.payload.required_resources.css,
            ),
        )
    return ChallengeRequestResponse(
        should_challenge=result.should_challenge,
        session_id=result.session_id,
        severity=result.severity,
        payload=payload,
    )


@router.post("/resource-loaded", response_model=ResourceLoadedResponse)
def resource_loaded(
    body: ResourceLoadedRequest,
    tracker: ResourceTrackerDep,
    _token: RateLimitedTokenDep,
) -> ResourceLoadedResponse:
    """Record a beacon for a fetched challenge resource."""
    if not tracker.record_load(body.session_id, body.resource_path, body.type):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Session not found or expired"
        )
    return ResourceLoadedResponse(message=f"{body.type.upper()} resource tracked")


@router.post("/verify-resources", response_model=VerifyResourcesResponse)
def verify_resources(
    body: VerifyResourcesRequest,
    tracker: ResourceTrackerDep,
    dispatcher: DispatcherDep,
) -> VerifyResourcesResponse:
    """Check that the issued resources were fetched."""
    if body.expected_resources is not None:
        result = tracker.verify(
            body.session_id, body.expected_resources.js, body.expected_resources.css
        )
    else:
        result = tracker.verify_issued(body.session_id)

    if not result.passed:
        logger.info("Resource verification failed for %s: %s", body.session_id, result.reason)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Verification failed")

    session = dispatcher.get_session(body.session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return VerifyResourcesResponse(
        passed=True,
        js_loaded=result.js_loaded,
        css_loaded=result.css_loaded,
        risk_score=session.risk_score,
        requires_captcha=session.is_challenged,
    )


@router.post("/puzzle", response_model=PuzzleResponse)
def request_puzzles(
    body: PuzzleRequest,
    dispatcher: DispatcherDep,
    pow_service: PowServiceDep,
) -> PuzzleResponse:
    """Issue the proof-of-work puzzles for a pending challenge."""
    session = _pending_challenge(dispatcher, body.session_id)
    issued = pow_service.issue(session.id)
    return PuzzleResponse(
        session_id=issued.session_id,
        puzzles=[
            PuzzleOut(token=p.token, salt=p.salt, target_bits=p.target_bits)
            for p in issued.puzzles
        ],
        expires_at=issued.expires_at,
    )


@router.post("/verify", response_model=VerifyChallengeResponse)
def verify_challenge(
    body: VerifyChallengeRequest,
    response: Response,
    tracker: ResourceTrackerDep,
    dispatcher: DispatcherDep,
    pow_service: PowServiceDep,
) -> VerifyChallengeResponse:
    """Complete a challenge and issue the signed verification cookie.

    Requires the issued resources to have been fetched and every puzzle to be
    solved. The challenge session is discarded once the cookie is handed out.
    """
    _pending_challenge(dispatcher, body.session_id)
    resources = tracker.verify_issued(body.session_id)
    if not resources.passed:
        logger.info("Challenge %s not verified: %s", body.session_id, resources.reason)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid solution")
    if not pow_service.verify(body.session_id, body.tokens, body.solutions):
        logger.info("Challenge %s not verified: proof of work rejected", body.session_id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid solution")
    if not tracker.mark_verified(body.session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    response.set_cookie(
        key=VERIFICATION_COOKIE,
        value=create_verification_token(body.session_id),
        max_age=settings.verification_token_hours * 3600,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )
    dispatcher.discard(body.session_id)
    logger.info("Challenge %s verified", body.session_id)
    return VerifyChallengeResponse()


@router.get("/stats", response_model=ChallengeStatsResponse)
def challenge_stats(_admin: AdminDep, dispatcher: DispatcherDep) -> ChallengeStatsResponse:
    """Aggregate challenge statistics for monitoring."""
    stats = dispatcher.stats()
    return ChallengeStatsResponse(
        timestamp=utcnow(),
        stats=ChallengeStatsOut(
            total_sessions=stats.total,
            active_sessions=stats.active,
            challenged_sessions=stats.challenged,
            verified_sessions=stats.verified,
            average_risk_score=stats.average_risk_score,
        ),
    )


@router.post("/stats", response_model=ChallengeSessionDetail)
def challenge_session_detail(
    body: ChallengeSessionQuery,
    _admin: AdminDep,
    dispatcher: DispatcherDep,
) -> ChallengeSessionDetail:
    """Return one challenge session for debugging."""
    session = dispatcher.get_session(body.session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    resources = session.required_resources
    return ChallengeSessionDetail(
        session_id=session.id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        client_signature=session.client_signature,
        risk_score=session.risk_score,
        is_challenged=session.is_challenged,
        verified=session.verified,
        required_resources=ResourcePaths(js=resources.js, css=resources.css) if resources else None,
        loaded_js=sorted(session.loaded_js),
        loaded_css=sorted(session.loaded_css),
    )
