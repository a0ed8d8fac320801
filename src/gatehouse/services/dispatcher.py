"""Challenge dispatch.

The dispatcher scores a request, decides whether to challenge it and always
records a challenge session so later beacons and the final verification call
can be correlated by id. Challenged requests receive a payload naming one
script and one stylesheet path that exist only for that challenge.
"""

from __future__ import annotations

import logging
import random
import secrets
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache

from gatehouse.core.decision import Decision, Severity, Thresholds, decide
from gatehouse.core.fingerprint import Fingerprint, analyze, rate_abuse_risk
from gatehouse.core.settings import Settings, settings
from gatehouse.db.time import utcnow
from gatehouse.services.challenge_store import (
    ChallengeResources,
    ChallengeSession,
    ChallengeStore,
    get_challenge_store,
)
from gatehouse.services.local_cache import LocalCache

logger = logging.getLogger(__name__)

RESOURCE_PATH_PREFIX = "/captcha/resources"
NO_CHALLENGE_REASON = "No challenge required"


@dataclass(frozen=True)
class ChallengePayload:
    """Client-facing part of a challenge."""

    id: str
    issued_at: datetime
    required_resources: ChallengeResources


@dataclass(frozen=True)
class DispatchResult:
    """Verdict returned to the caller of :meth:`ChallengeDispatcher.dispatch`."""

    should_challenge: bool
    session_id: str
    severity: Severity
    reason: str
    payload: ChallengePayload | None = None


@dataclass(frozen=True)
class ChallengeStats:
    """Aggregate view over stored challenge sessions."""

    total: int
    active: int
    challenged: int
    verified: int
    average_risk_score: float


def new_session_id() -> str:
    return f"challenge_{uuid.uuid4().hex}"


def new_resources() -> ChallengeResources:
    """Return a fresh, single-use script and stylesheet path pair."""
    return ChallengeResources(
        js=f"{RESOURCE_PATH_PREFIX}/{secrets.token_hex(12)}.js",
        css=f"{RESOURCE_PATH_PREFIX}/{secrets.token_hex(12)}.css",
    )


class ChallengeDispatcher:
    """Create challenge sessions and payloads for inbound requests.

    Args:
        store: Where challenge sessions are kept.
        config: Settings providing the challenge TTL and default thresholds.
        rng: Random source for the probabilistic band; seed it in tests.
        clock: Returns the current aware UTC time.
        verdicts: Cache for per-identity verdicts; see :meth:`dispatch`.
    """

    def __init__(
        self,
        store: ChallengeStore,
        *,
        config: Settings = settings,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
        verdicts: LocalCache[Decision] | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._rng = rng
        self._clock = clock
        self._verdicts: LocalCache[Decision] = verdicts or LocalCache(
            config.challenge_ttl_seconds
        )

    def default_thresholds(self) -> Thresholds:
        return Thresholds(
            hard=self._config.challenge_hard_threshold,
            soft=self._config.challenge_soft_threshold,
        )

    def _decide(
        self, fingerprint: Fingerprint, limits: Thresholds, identity: str | None
    ) -> Decision:
        if identity is None:
            return decide(fingerprint, limits, self._rng)
        # A new score or new thresholds get a fresh draw.
        key = f"{identity}:{fingerprint.risk_score}:{limits.soft}:{limits.hard}"
        cached = self._verdicts.get(key)
        if cached is not None:
            return cached
        decision = decide(fingerprint, limits, self._rng)
        self._verdicts.set(key, decision)
        return decision

    def dispatch(
        self,
        client_signature: str,
        headers: Mapping[str, str | None] | None,
        thresholds: Thresholds | None = None,
        identity: str | None = None,
    ) -> DispatchResult:
        """Score a request and record a challenge session for it.

        Args:
            client_signature: Declared client identity (``User-Agent``).
            headers: Request headers; keys are matched case-insensitively.
            thresholds: Score cutoffs; defaults come from settings.
            identity: Optional stable key for the caller (session token or
                hashed address). When given, the verdict for that identity
                and risk score is reused for one challenge lifetime instead
                of being drawn again on every call.

        Returns:
            A :class:`DispatchResult`. ``payload`` is set only when challenged.
        """
        fingerprint = analyze(client_signature, headers)
        rating = rate_abuse_risk(fingerprint)
        if rating.is_abuser:
            logger.info(
                "Abusive client (confidence %.2f): %s", rating.confidence, rating.pattern
            )
        limits = thresholds or self.default_thresholds()
        decision = self._decide(fingerprint, limits, identity)
        return self._issue(client_signature, fingerprint.risk_score, decision)

    def admit(self, client_signature: str, headers: Mapping[str, str | None] | None) -> DispatchResult:
        """Record an unchallenged session without deciding; used when anti-abuse is off."""
        fingerprint = analyze(client_signature, headers)
        return self._issue(
            client_signature, fingerprint.risk_score, Decision(False, "low", NO_CHALLENGE_REASON)
        )

    def _issue(self, client_signature: str, risk_score: int, decision: Decision) -> DispatchResult:
        now = self._clock()
        resources = new_resources() if decision.should_challenge else None
        session = ChallengeSession(
            id=new_session_id(),
            created_at=now,
            expires_at=now + timedelta(seconds=self._config.challenge_ttl_seconds),
            client_signature=client_signature,
            risk_score=risk_score,
            is_challenged=decision.should_challenge,
            required_resources=resources,
        )
        self._store.save(session)

        if resources is None:
            logger.debug(
                "No challenge for session %s (score %d)", session.id, risk_score
            )
            return DispatchResult(False, session.id, decision.severity, decision.reason)

        logger.info(
            "Issued %s challenge %s (score %d): %s",
            decision.severity,
            session.id,
            risk_score,
            decision.reason,
        )
        payload = ChallengePayload(
            id=session.id,
            issued_at=now,
            required_resources=resources,
        )
        return DispatchResult(True, session.id, decision.severity, decision.reason, payload)

    def get_session(self, session_id: str) -> ChallengeSession | None:
        """Return a live challenge session, or None if unknown or expired."""
        return self._store.get(session_id)

    def discard(self, session_id: str) -> bool:
        """Delete a challenge session, e.g. after a successful verification handoff."""
        return self._store.delete(session_id)

    def stats(self) -> ChallengeStats:
        """Summarize stored sessions; only unexpired ones count as active."""
        now = self._clock()
        sessions = self._store.sessions()
        active = [s for s in sessions if not s.is_expired(now)]
        total_risk = sum(s.risk_score for s in active)
        return ChallengeStats(
            total=self._store.count(),
            active=len(active),
            challenged=sum(1 for s in active if s.is_challenged),
            verified=sum(1 for s in active if s.verified),
            average_risk_score=total_risk / len(active) if active else 0.0,
        )

    def sweep_verdicts(self) -> int:
        return self._verdicts.sweep()


@lru_cache
def get_dispatcher() -> ChallengeDispatcher:
    return ChallengeDispatcher(get_challenge_store())
