# src/gatehouse/services/__init__.py
"""Stateful services: session quotas, challenge dispatch and housekeeping."""

from .dispatcher import ChallengeDispatcher
from .resource_tracker import ResourceTracker
from .session_registry import SessionRegistry
from .sweeper import ExpirySweeper, SweepWorker

__all__ = [
    "ChallengeDispatcher",
    "ExpirySweeper",
    "ResourceTracker",
    "SessionRegistry",
    "SweepWorker",
]
