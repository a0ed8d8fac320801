"""Resource-load beacons for challenge sessions.

A challenged client must fetch the exact script and stylesheet issued for its
challenge. The tracker records beacons and checks that both expected paths
were seen; fetching some other script or stylesheet never passes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from gatehouse.services.challenge_store import (
    RESOURCE_KINDS,
    ChallengeStore,
    ResourceKind,
    get_challenge_store,
)

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND = "Session not found"
ALL_RESOURCES_LOADED = "All resources loaded"


@dataclass(frozen=True)
class ResourceVerification:
    """Result of checking a session's loaded resources."""

    passed: bool
    js_loaded: bool
    css_loaded: bool
    reason: str


def _missing_reason(js_loaded: bool, css_loaded: bool) -> str:
    missing = [name for name, ok in (("JS", js_loaded), ("CSS", css_loaded)) if not ok]
    return f"Missing resources: {', '.join(missing)}"


class ResourceTracker:
    """Record and verify resource loads against a challenge store."""

    def __init__(self, store: ChallengeStore) -> None:
        self._store = store

    def record_load(self, session_id: str, resource_path: str, kind: ResourceKind) -> bool:
        """Add ``resource_path`` to the session's loaded set for ``kind``.

        Duplicate beacons are harmless.

        Returns:
            True if the session exists and has not expired.

        Raises:
            ValueError: If ``kind`` is not ``"js"`` or ``"css"``.
        """
        if kind not in RESOURCE_KINDS:
            raise ValueError(f"Invalid resource kind {kind!r}; expected 'js' or 'css'")
        recorded = self._store.add_loaded(session_id, kind, resource_path)
        if not recorded:
            logger.debug("Beacon for unknown challenge session %s", session_id)
        return recorded

    def verify(self, session_id: str, expected_js: str, expected_css: str) -> ResourceVerification:
        """Check that both expected paths were recorded for ``session_id``."""
        session = self._store.get(session_id)
        if session is None:
            return ResourceVerification(False, False, False, SESSION_NOT_FOUND)

        js_loaded = expected_js in session.loaded_js
        css_loaded = expected_css in session.loaded_css
        if not (js_loaded and css_loaded):
            return ResourceVerification(
                False, js_loaded, css_loaded, _missing_reason(js_loaded, css_loaded)
            )
        return ResourceVerification(True, True, True, ALL_RESOURCES_LOADED)

    def verify_issued(self, session_id: str) -> ResourceVerification:
        """Verify against the resources stored on the session when it was issued."""
        session = self._store.get(session_id)
        if session is None:
            return ResourceVerification(False, False, False, SESSION_NOT_FOUND)
        if session.required_resources is None:
            # Not challenged: nothing had to be loaded.
            return ResourceVerification(True, True, True, ALL_RESOURCES_LOADED)
        resources = session.required_resources
        return self.verify(session_id, resources.js, resources.css)

    def mark_verified(self, session_id: str) -> bool:
        """Set the session's one-way ``verified`` flag; False if it is gone."""
        marked = self._store.mark_verified(session_id)
        if marked:
            logger.info("Challenge session %s verified", session_id)
        return marked


@lru_cache
def get_resource_tracker() -> ResourceTracker:
    return ResourceTracker(get_challenge_store())
