"""Shared API dependencies: services, caller identity and quota enforcement."""

from __future__ import annotations

import hmac
import logging
from typing import Annotated

from fastapi import Cookie, Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from gatehouse.core.settings import settings
from gatehouse.services.dispatcher import ChallengeDispatcher, get_dispatcher
from gatehouse.services.pow_service import PowService, get_pow_service
from gatehouse.services.resource_tracker import ResourceTracker, get_resource_tracker
from gatehouse.services.session_registry import (
    QuotaResult,
    SessionRegistry,
    get_session_registry,
)
from gatehouse.services.verification import VERIFICATION_COOKIE, read_verification_token
from gatehouse.utils.hash import hash_client_address

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session-token"
UNKNOWN_ADDRESS = "unknown"

# Optional bearer: anonymous callers are allowed on most routes
bearer_scheme = HTTPBearer(auto_error=False)


def get_session_registry_dep() -> SessionRegistry:
    return get_session_registry()


def get_dispatcher_dep() -> ChallengeDispatcher:
    return get_dispatcher()


def get_resource_tracker_dep() -> ResourceTracker:
    return get_resource_tracker()


def get_pow_service_dep() -> PowService:
    return get_pow_service()


SessionRegistryDep = Annotated[SessionRegistry, Depends(get_session_registry_dep)]
DispatcherDep = Annotated[ChallengeDispatcher, Depends(get_dispatcher_dep)]
ResourceTrackerDep = Annotated[ResourceTracker, Depends(get_resource_tracker_dep)]
PowServiceDep = Annotated[PowService, Depends(get_pow_service_dep)]
SessionTokenDep = Annotated[str | None, Cookie(alias=SESSION_COOKIE)]
VerificationCookieDep = Annotated[str | None, Cookie(alias=VERIFICATION_COOKIE)]


def client_address(request: Request) -> str:
    """Return the caller's network address.

    Uses the first ``X-Forwarded-For`` entry, then ``X-Real-IP``, then the
    socket peer.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client is not None and request.client.host:
        return request.client.host
    return UNKNOWN_ADDRESS


def hashed_client_address(request: Request) -> str:
    """Return the salted hash used as the anonymous owner key."""
    return hash_client_address(client_address(request), settings.ip_hash_salt)


def get_optional_account_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> str | None:
    """Return the account id from a bearer JWT, or None for anonymous callers.

    Raises:
        HTTPException: If a bearer token is present but invalid.
    """
    if credentials is None:
        return None
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return subject


OptionalAccountDep = Annotated[str | None, Depends(get_optional_account_id)]


def get_current_account_id(account_id: OptionalAccountDep) -> str:
    """Require an authenticated account."""
    if account_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not authenticated",
        )
    return account_id


CurrentAccountDep = Annotated[str, Depends(get_current_account_id)]


def require_admin(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> None:
    """Allow only callers presenting ``ADMIN_TOKEN``; deny all when it is unset."""
    expected = settings.admin_token
    if (
        not expected
        or credentials is None
        or not hmac.compare_digest(credentials.credentials.encode(), expected.encode())
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _rate_limit_headers(result: QuotaResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(max(0, result.limit - result.current_count)),
    }


def enforce_rate_limit(
    response: Response,
    registry: SessionRegistryDep,
    token: SessionTokenDep = None,
) -> str:
    """Count the request against the caller's session quota.

    Returns:
        The session token, for handlers that need it.

    Raises:
        HTTPException: 401 without a valid session, 429 over quota.
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Session token required"
        )
    if not registry.validate(token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session token",
        )
    result = registry.increment_and_check(token)
    headers = _rate_limit_headers(result)
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers=headers,
        )
    response.headers.update(headers)
    return token


RateLimitedTokenDep = Annotated[str, Depends(enforce_rate_limit)]


def enforce_challenge(
    request: Request,
    dispatcher: DispatcherDep,
    token: SessionTokenDep = None,
    verification: VerificationCookieDep = None,
) -> None:
    """Gate a route behind the anti-abuse challenge.

    A valid verification cookie passes. Otherwise the caller is scored and,
    if challenged, refused with 403 and the challenge it has to complete.
    Clients that are not challenged pass without a cookie.

    Raises:
        HTTPException: 403 with the challenge session id and resource paths.
    """
    if not settings.anti_abuse_enabled:
        return
    if read_verification_token(verification) is not None:
        return

    identity = token or hashed_client_address(request)
    result = dispatcher.dispatch(
        request.headers.get("user-agent", ""), dict(request.headers), identity=identity
    )
    if not result.should_challenge or result.payload is None:
        return

    logger.info("Challenge required for %s %s", request.method, request.url.path)
    resources = result.payload.required_resources
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "message": "Challenge required",
            "session_id": result.session_id,
            "severity": result.severity,
            "required_resources": {"js": resources.js, "css": resources.css},
        },
        headers={
            "X-Challenge-Session": result.session_id,
            "X-Challenge-Severity": result.severity,
        },
    )


ChallengeGateDep = Annotated[None, Depends(enforce_challenge)]
