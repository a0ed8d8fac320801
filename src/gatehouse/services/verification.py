"""Signed proof that a client completed a challenge.

After a successful verification the client receives an HS256 JWT in a cookie.
Callers can check the cookie instead of challenging the client again until
the token expires.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from gatehouse.core.settings import Settings, settings
from gatehouse.db.time import utcnow

logger = logging.getLogger(__name__)

VERIFICATION_COOKIE = "gatehouse-verification"


def create_verification_token(
    session_id: str,
    *,
    config: Settings = settings,
    now: datetime | None = None,
) -> str:
    """Create a verification token for a challenge session."""
    issued_at = now or utcnow()
    claims: dict[str, Any] = {
        "verified": True,
        "sid": session_id,
        "iat": issued_at,
        "exp": issued_at + timedelta(hours=config.verification_token_hours),
    }
    token: str = jwt.encode(claims, config.secret_key, algorithm=config.jwt_algorithm)
    return token


def read_verification_token(token: str | None, *, config: Settings = settings) -> str | None:
    """Return the challenge session id from a valid token, else None."""
    if not token:
        return None
    try:
        claims = jwt.decode(token, config.secret_key, algorithms=[config.jwt_algorithm])
    except JWTError as exc:
        logger.debug("Rejected verification token: %s", exc)
        return None
    if claims.get("verified") is not True:
        return None
    session_id = claims.get("sid")
    return session_id if isinstance(session_id, str) else None
