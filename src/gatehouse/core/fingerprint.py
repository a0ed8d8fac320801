"""Request fingerprint scoring.

This module inspects the declared client signature (the ``User-Agent`` value)
and the request header set, and produces an additive risk score. It is pure:
no I/O, no hidden state, identical input always yields an identical result.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Final

KNOWN_BOT_PENALTY: Final[int] = 70
HEURISTIC_PENALTY: Final[int] = 15
MISSING_HEADERS_PENALTY: Final[int] = 20
PROXY_PENALTY: Final[int] = 25
LIKELY_BOT_SCORE: Final[int] = 40
MAX_SIGNATURE_LENGTH: Final[int] = 500
MIN_SCORE: Final[int] = 0
MAX_SCORE: Final[int] = 100

KNOWN_BOT_REASON: Final[str] = "Known bot user agent detected"
PROXY_REASON: Final[str] = "Multiple VPN/proxy indicators detected"
EDGE_REASON: Final[str] = "CloudFlare detected (legitimate but monitored)"

# Command-line tools, scripting HTTP clients, headless drivers and crawlers.
BOT_PATTERNS: Final[tuple[re.Pattern[str], ...]] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"bot",
        r"crawler",
        r"spider",
        r"scraper",
        r"curl",
        r"wget",
        r"python",
        r"java(?!script)",
        r"perl",
        r"ruby",
        r"php",
        r"go-http-client",
        r"requests",
        r"httpx",
        r"scrapy",
        r"selenium",
        r"puppeteer",
        r"playwright",
        r"phantomjs",
        r"headless",
        r"chrome-lighthouse",
        r"googlebot",
        r"bingbot",
        r"slurp",
        r"duckduckbot",
        r"baidu",
        r"yandex",
        r"facebookexternalhit",
        r"twitterbot",
        r"linkedinbot",
        r"whatsapp",
        r"telegram",
        r"applebot",
        r"shodan",
        r"masscan",
        r"nmap",
    )
)

REQUIRED_BROWSER_HEADERS: Final[tuple[str, ...]] = (
    "accept-language",
    "accept-encoding",
    "accept",
)

PROXY_INDICATOR_HEADERS: Final[tuple[str, ...]] = (
    "x-forwarded-for",
    "x-forwarded-host",
    "x-proxy-authorization",
    "via",
    "x-via",
)

TRUSTED_EDGE_HEADERS: Final[tuple[str, ...]] = ("cf-ray", "cf-connecting-ip")

HeaderSet = Mapping[str, str]


@dataclass(frozen=True)
class Heuristic:
    """A single consistency check over a signature and its headers."""

    reason: str
    check: Callable[[str, HeaderSet], bool]


HEURISTICS: Final[tuple[Heuristic, ...]] = (
    Heuristic(
        "Real Mozilla browsers should have accept-language",
        lambda ua, h: "Mozilla" in ua and not h.get("accept-language"),
    ),
    Heuristic(
        "Chrome browsers should include sec-ch-ua header",
        lambda ua, h: "Chrome" in ua and not h.get("sec-ch-ua"),
    ),
    Heuristic(
        "User agent claims both Safari and Chrome",
        lambda ua, h: "Safari" in ua and "Chrome" in ua,
    ),
    Heuristic(
        "Firefox should not have sec-ch-ua header",
        lambda ua, h: "Firefox" in ua and bool(h.get("sec-ch-ua")),
    ),
    Heuristic("Empty user agent", lambda ua, h: not ua),
    Heuristic(
        "Unusually long user agent string",
        lambda ua, h: len(ua) > MAX_SIGNATURE_LENGTH,
    ),
    Heuristic(
        "User agent mismatch between sources",
        lambda ua, h: bool(ua) and not h.get("user-agent"),
    ),
    Heuristic(
        "Modern browsers should include sec-fetch-site header",
        lambda ua, h: "Mozilla" in ua and not h.get("sec-fetch-site"),
    ),
    Heuristic(
        "Suspicious proxy/VPN pattern",
        lambda ua, h: bool(h.get("x-forwarded-for"))
        and not h.get("cf-connecting-ip")
        and not h.get("x-real-ip"),
    ),
)


@dataclass(frozen=True)
class Fingerprint:
    """Risk signal derived from a request's signature and headers.

    Attributes:
        client_signature: The declared client identity string.
        headers: Header map with lower-cased keys and empty values removed.
        suspicious_patterns: Matched reasons, in evaluation order.
        risk_score: Additive score clamped to ``[0, 100]``.
        is_likely_bot: True for a known automation marker or a score of 40 or more.
        known_bot: True if the signature matched an automation marker.
        edge_markers: Trusted edge/CDN headers seen; informational only.
    """

    client_signature: str
    headers: dict[str, str] = field(default_factory=dict)
    suspicious_patterns: tuple[str, ...] = ()
    risk_score: int = 0
    is_likely_bot: bool = False
    known_bot: bool = False
    edge_markers: tuple[str, ...] = ()


@dataclass(frozen=True)
class AbuseRating:
    """Coarse abuse classification used for server-side reporting."""

    is_abuser: bool
    confidence: float
    pattern: str


def normalize_headers(headers: Mapping[str, str | None] | None) -> dict[str, str]:
    """Return a copy of ``headers`` with lower-cased keys and no empty values."""
    if not headers:
        return {}
    return {str(key).lower(): str(value) for key, value in headers.items() if value}


def is_known_bot(client_signature: str) -> bool:
    """Return True if the signature contains a known automation marker."""
    return any(pattern.search(client_signature) for pattern in BOT_PATTERNS)


def analyze(
    client_signature: str | None,
    headers: Mapping[str, str | None] | None = None,
) -> Fingerprint:
    """Score a request's declared client signature and header set.

    Args:
        client_signature: The declared client identity (``User-Agent``).
        headers: Raw request headers; keys are matched case-insensitively.

    Returns:
        A :class:`Fingerprint` whose ``risk_score`` is always within ``[0, 100]``.
    """
    signature = client_signature or ""
    header_set = normalize_headers(headers)
    patterns: list[str] = []
    score = 0

    known_bot = is_known_bot(signature)
    if known_bot:
        patterns.append(KNOWN_BOT_REASON)
        score += KNOWN_BOT_PENALTY

    for heuristic in HEURISTICS:
        if heuristic.check(signature, header_set):
            patterns.append(heuristic.reason)
            score += HEURISTIC_PENALTY

    missing = [name for name in REQUIRED_BROWSER_HEADERS if not header_set.get(name)]
    if len(missing) > 1:
        patterns.append(f"Missing headers: {', '.join(missing)}")
        score += MISSING_HEADERS_PENALTY

    proxy_count = sum(1 for name in PROXY_INDICATOR_HEADERS if header_set.get(name))
    if proxy_count > 2:
        patterns.append(PROXY_REASON)
        score += PROXY_PENALTY

    edge_markers = tuple(name for name in TRUSTED_EDGE_HEADERS if header_set.get(name))
    if edge_markers:
        patterns.append(EDGE_REASON)

    score = min(MAX_SCORE, max(MIN_SCORE, score))
    return Fingerprint(
        client_signature=signature,
        headers=header_set,
        suspicious_patterns=tuple(patterns),
        risk_score=score,
        is_likely_bot=known_bot or score >= LIKELY_BOT_SCORE,
        known_bot=known_bot,
        edge_markers=edge_markers,
    )


def rate_abuse_risk(fingerprint: Fingerprint) -> AbuseRating:
    """Classify a fingerprint into abuser/clean with a confidence value."""
    if fingerprint.risk_score >= 70:
        return AbuseRating(
            is_abuser=True,
            confidence=fingerprint.risk_score / 100,
            pattern="; ".join(fingerprint.suspicious_patterns),
        )
    if fingerprint.risk_score >= 50:
        return AbuseRating(
            is_abuser=fingerprint.is_likely_bot,
            confidence=fingerprint.risk_score / 100,
            pattern="; ".join(fingerprint.suspicious_patterns),
        )
    return AbuseRating(is_abuser=False, confidence=0.0, pattern="Clean")
