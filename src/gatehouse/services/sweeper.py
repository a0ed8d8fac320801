"""Expired-record cleanup and quota window rollover.

Deleting expired records is housekeeping only: every read path re-checks
expiry on its own. Each pass also restarts the request count of sessions
whose quota window has elapsed, so a delayed pass delays that rollover.
:meth:`ExpirySweeper.sweep` can be called directly (tests, the
``gatehouse-sweep`` command, an external scheduler) or periodically by
:class:`SweepWorker`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

from gatehouse.core.errors import StoreError
from gatehouse.core.settings import settings
from gatehouse.db.time import utcnow
from gatehouse.services.challenge_store import ChallengeStore, get_challenge_store
from gatehouse.services.dispatcher import get_dispatcher
from gatehouse.services.kv import get_kv_store
from gatehouse.services.session_registry import SessionRegistry, get_session_registry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    """What one sweep pass removed, plus how many quotas it restarted."""

    sessions_deleted: int = 0
    challenges_deleted: int = 0
    cache_entries_dropped: int = 0
    counts_reset: int = 0

    @property
    def total(self) -> int:
        return self.sessions_deleted + self.challenges_deleted + self.cache_entries_dropped


class ExpirySweeper:
    """Delete expired records and roll over elapsed quota windows.

    Args:
        registry: Session registry whose durable store and cache are swept.
        challenges: Challenge session store.
        extra_sweeps: Further ``sweep()`` callables, such as an in-process
            key-value store or the dispatcher's verdict cache; their counts
            are reported as cache entries.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        challenges: ChallengeStore,
        extra_sweeps: Sequence[Callable[[], int]] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._challenges = challenges
        self._extra_sweeps = tuple(extra_sweeps)
        self._clock = clock

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Run one pass; ``now`` defaults to the current time."""
        cutoff = now or self._clock()
        sessions = self._registry.sweep_expired(cutoff)
        counts_reset = self._registry.reset_request_counts(cutoff)
        challenges = self._challenges.sweep(cutoff)
        dropped = self._registry.cache.sweep()
        for extra in self._extra_sweeps:
            dropped += extra()

        report = SweepReport(sessions, challenges, dropped, counts_reset)
        if report.total or report.counts_reset:
            logger.info(
                "Sweep removed %d sessions, %d challenge sessions, %d cache entries; "
                "reset %d quotas",
                report.sessions_deleted,
                report.challenges_deleted,
                report.cache_entries_dropped,
                report.counts_reset,
            )
        return report


class SweepWorker:
    """Run :meth:`ExpirySweeper.sweep` in the background at a fixed interval."""

    def __init__(self, sweeper: ExpirySweeper, interval_seconds: float | None = None) -> None:
        """Initialize the worker.

        Args:
            sweeper: The sweeper to run.
            interval_seconds: Pause between passes; defaults to settings.
        """
        self.sweeper = sweeper
        self.interval = max(
            0.1, float(interval_seconds or settings.sweep_interval_seconds)
        )
        self.last_report: SweepReport | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background sweep loop."""
        if not self.running:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background sweep loop and wait for the current pass."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                self.last_report = await asyncio.to_thread(self.sweeper.sweep)
            except StoreError as e:
                logger.warning("SweepWorker could not reach a store: %s", e)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.error("SweepWorker encountered an error: %s", e, exc_info=True)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except TimeoutError:
                continue


@lru_cache
def get_expiry_sweeper() -> ExpirySweeper:
    """Return a sweeper wired to the process-wide stores."""
    extra_sweeps: list[Callable[[], int]] = [get_dispatcher().sweep_verdicts]
    kv_store = get_kv_store()
    if kv_store is not None:
        extra_sweeps.append(kv_store.sweep)
    return ExpirySweeper(get_session_registry(), get_challenge_store(), extra_sweeps)
