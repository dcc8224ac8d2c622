"""
Periodic urgency sweep.

Requirements only become Urgent when somebody looks at them, so the sweep
runs once on load (inside MutationCoordinator.reload) and then on an
interval.  UrgencySweeper tracks when it last ran; run_forever() is the
loop used by the CLI watch command and the dashboard lifespan task.  The
watch command shares its store with the dashboard process, so it reloads
before every sweep instead of trusting its own snapshot.
"""
import asyncio
import logging
import time
from datetime import date
from typing import Callable, Iterable, Optional

from .coordinator import MutationCoordinator
from .errors import DuplicateSubmissionError, StoreError

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 3600


class UrgencySweeper:

    def __init__(
        self,
        coordinators: Callable[[], Iterable[MutationCoordinator]],
        interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        reload_first: bool = False,
    ) -> None:
        """
        Args:
            coordinators:     Returns the coordinators to sweep (re-read on every
                              run, so sessions opened later are included).
            interval_seconds: Minimum time between sweeps.
            clock:            Monotonic time source (seconds).
            reload_first:     Rebuild each snapshot from the store before
                              sweeping.  Needed when another process writes
                              to the same store.
        """
        self._coordinators = coordinators
        self.interval_seconds = interval_seconds
        self._clock = clock
        self.reload_first = reload_first
        self._last_run: Optional[float] = None
        self._stop = asyncio.Event()

    def is_due(self) -> bool:
        if self._last_run is None:
            return True
        return self._clock() - self._last_run >= self.interval_seconds

    def mark_run(self) -> None:
        """Record a sweep done elsewhere (e.g. during load) so the next one waits a full interval."""
        self._last_run = self._clock()

    async def run_once(self, today: Optional[date] = None) -> dict[str, list[str]]:
        """Sweep every coordinator now.  Returns promoted ids per owner."""
        promoted: dict[str, list[str]] = {}
        for coordinator in list(self._coordinators()):
            try:
                if self.reload_first:
                    ids = (await coordinator.reload(today)).promoted
                else:
                    ids = await coordinator.run_urgency_sweep(today)
            except DuplicateSubmissionError:
                logger.debug("Sweep already running for %s; skipping", coordinator.owner_id)
                continue
            except StoreError as exc:
                logger.error("Urgency sweep failed for %s: %s", coordinator.owner_id, exc)
                continue
            if ids:
                promoted[coordinator.owner_id] = ids
        self._last_run = self._clock()
        return promoted

    async def run_if_due(self, today: Optional[date] = None) -> Optional[dict[str, list[str]]]:
        """Sweep when the interval has elapsed; otherwise return None."""
        if not self.is_due():
            return None
        return await self.run_once(today)

    async def run_forever(self, poll_seconds: float = 1.0) -> None:
        """Sweep on every interval until stop() is called."""
        logger.info("Urgency sweeper started (every %ds)", self.interval_seconds)
        try:
            while not self._stop.is_set():
                await self.run_if_due()
                try:
                    # Interruptible sleep
                    await asyncio.wait_for(self._stop.wait(), timeout=poll_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("Urgency sweeper stopped")

    def stop(self) -> None:
        self._stop.set()
