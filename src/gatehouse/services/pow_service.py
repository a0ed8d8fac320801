"""Proof-of-work puzzles for challenged clients.

Puzzles are stateless: each one travels as a signed token carrying its salt,
difficulty, expiry and the challenge session it belongs to. Verification
checks the signature and the submitted nonce, so any process holding the
secret key can verify puzzles issued by any other.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

from jose import JWTError, jwt

from gatehouse.core import pow as core_pow
from gatehouse.core.settings import Settings, settings
from gatehouse.db.time import utcnow

logger = logging.getLogger(__name__)

PUZZLE_TOKEN_TYPE = "pow"
SALT_BYTES = 16


@dataclass(frozen=True)
class Puzzle:
    """One puzzle as handed to the client."""

    token: str
    salt: str
    target_bits: int


@dataclass(frozen=True)
class PuzzleSet:
    session_id: str
    puzzles: list[Puzzle]
    expires_at: datetime


class PowService:
    """Issue and verify proof-of-work puzzles bound to challenge sessions."""

    def __init__(self, *, config: Settings = settings) -> None:
        self._config = config

    def issue(self, session_id: str, now: datetime | None = None) -> PuzzleSet:
        """Create ``POW_PUZZLE_COUNT`` puzzles for ``session_id``."""
        issued_at = now or utcnow()
        expires_at = issued_at + timedelta(seconds=self._config.pow_ttl_seconds)
        bits = self._config.pow_target_bits
        puzzles = []
        for _ in range(self._config.pow_puzzle_count):
            salt = secrets.token_hex(SALT_BYTES)
            claims: dict[str, Any] = {
                "typ": PUZZLE_TOKEN_TYPE,
                "sid": session_id,
                "salt": salt,
                "bits": bits,
                "exp": expires_at,
            }
            token: str = jwt.encode(
                claims, self._config.secret_key, algorithm=self._config.jwt_algorithm
            )
            puzzles.append(Puzzle(token=token, salt=salt, target_bits=bits))
        return PuzzleSet(session_id=session_id, puzzles=puzzles, expires_at=expires_at)

    def _claims(self, token: str) -> dict[str, Any] | None:
        try:
            claims: dict[str, Any] = jwt.decode(
                token, self._config.secret_key, algorithms=[self._config.jwt_algorithm]
            )
        except JWTError as exc:
            logger.debug("Rejected puzzle token: %s", exc)
            return None
        if claims.get("typ") != PUZZLE_TOKEN_TYPE:
            return None
        return claims

    def verify(self, session_id: str, tokens: Sequence[str], solutions: Sequence[int]) -> bool:
        """Return True if every puzzle of a full set is solved for ``session_id``.

        The set must hold ``POW_PUZZLE_COUNT`` distinct, unexpired puzzles
        issued for this session, each with a valid nonce.
        """
        required = self._config.pow_puzzle_count
        if len(tokens) != required or len(solutions) != required:
            return False

        digest = core_pow.payload_digest(session_id)
        seen: set[str] = set()
        for token, nonce in zip(tokens, solutions):
            claims = self._claims(token)
            if claims is None or claims.get("sid") != session_id:
                return False
            salt, bits = claims.get("salt"), claims.get("bits")
            if not isinstance(salt, str) or not isinstance(bits, int) or salt in seen:
                return False
            seen.add(salt)
            try:
                salt_bytes = bytes.fromhex(salt)
            except ValueError:
                return False
            if not core_pow.validate_solution(salt_bytes, digest, nonce, bits):
                logger.info("Proof of work rejected for %s", session_id)
                return False
        return True


@lru_cache
def get_pow_service() -> PowService:
    return PowService()
