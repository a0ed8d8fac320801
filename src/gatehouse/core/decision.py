"""Tiered challenge decisions.

Scores at or above the hard threshold are always challenged and scores below
the soft threshold never are. In between, the challenge probability rises
linearly from 0 at ``soft`` to 1 at ``hard`` so that no fixed just-below-cutoff
score reliably passes.
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Final, Literal

from gatehouse.core.fingerprint import Fingerprint

Severity = Literal["low", "medium", "high"]

DEFAULT_HARD_THRESHOLD: Final[int] = 60
DEFAULT_SOFT_THRESHOLD: Final[int] = 40

KNOWN_AUTOMATION_REASON: Final[str] = "known automation pattern"
PASSED_REASON: Final[str] = "Risk assessment passed"

_system_random = random.SystemRandom()

__all__ = ["Decision", "Severity", "Thresholds", "decide"]


@dataclass(frozen=True)
class Thresholds:
    """Hard and soft risk-score cutoffs."""

    hard: int = DEFAULT_HARD_THRESHOLD
    soft: int = DEFAULT_SOFT_THRESHOLD

    def __post_init__(self) -> None:
        if not (0 <= self.soft < self.hard <= 100):
            raise ValueError(
                f"Thresholds must satisfy 0 <= soft < hard <= 100 (got soft={self.soft}, hard={self.hard})"
            )


@dataclass(frozen=True)
class Decision:
    """Outcome of a challenge decision."""

    should_challenge: bool
    severity: Severity
    reason: str


def decide(
    fingerprint: Fingerprint,
    thresholds: Thresholds | None = None,
    rng: random.Random | None = None,
) -> Decision:
    """Decide whether a fingerprint warrants a challenge.

    Args:
        fingerprint: Output of :func:`gatehouse.core.fingerprint.analyze`.
        thresholds: Score cutoffs; defaults to hard=60, soft=40.
        rng: Random source for the probabilistic band. Pass a seeded
            ``random.Random`` for reproducible outcomes.

    Returns:
        A :class:`Decision`. Only the band between ``soft`` and ``hard`` draws
        from ``rng``.
    """
    limits = thresholds or Thresholds()
    score = fingerprint.risk_score

    if fingerprint.is_likely_bot:
        return Decision(True, "high", KNOWN_AUTOMATION_REASON)

    if score >= limits.hard:
        return Decision(True, "high", f"Risk score {score} exceeds hard threshold")

    if score >= limits.soft:
        variance = (score - limits.soft) / (limits.hard - limits.soft)
        source = rng or _system_random
        if source.random() < variance:
            return Decision(
                True, "medium", f"Risk score {score} warrants additional verification"
            )

    return Decision(False, "low", PASSED_REASON)
