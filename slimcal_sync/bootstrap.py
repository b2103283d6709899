"""
Bootstrap orchestration.

On sign-in the engine runs migrate, flush, then hydrate, strictly in that
order so a flush never operates on not-yet-migrated state. Regaining focus,
visibility or connectivity re-runs flush and hydrate (never the migration),
at most once per throttle window.
"""

import logging
import time
from typing import Awaitable, Callable, Optional

from .connectivity import ConnectivityMonitor, Signal
from .flusher import QueueFlusher
from .hydrator import CloudHydrator
from .migrator import LocalMigrator
from .models import AuthUser

logger = logging.getLogger(__name__)


class BootstrapOrchestrator:
    """Sequences the sync stages and isolates their failures."""

    def __init__(
        self,
        migrator: LocalMigrator,
        flusher: QueueFlusher,
        hydrator: CloudHydrator,
        connectivity: ConnectivityMonitor,
        throttle_seconds: float = 2.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.migrator = migrator
        self.flusher = flusher
        self.hydrator = hydrator
        self.connectivity = connectivity
        self.throttle_seconds = throttle_seconds
        self.clock = clock
        self._last_regained: Optional[float] = None

    async def _stage(self, report: dict, name: str, run: Callable[[], Awaitable]) -> None:
        try:
            report[name] = await run()
        except Exception as e:
            logger.error(f"Bootstrap stage {name} failed: {e}")
            report[name] = e

    async def bootstrap(self, user: Optional[AuthUser]) -> dict:
        """
        Run migrate, flush, hydrate-today, hydrate-recent in order.

        Each stage's failure is logged and recorded in the report; later
        stages still run.

        Returns:
            Mapping of stage name to its result (or the exception it raised)
        """
        report: dict = {}
        if user is None:
            logger.debug("Bootstrap skipped: no signed-in user")
            return report

        logger.info(f"Bootstrapping sync for user {user.id}")
        await self._stage(report, "migrate", lambda: self.migrator.migrate_local_to_cloud(user))
        await self._stage(report, "flush", lambda: self.flusher.flush_pending(max_tries=2))
        await self._hydrate(report, user)
        return report

    async def _hydrate(self, report: dict, user: AuthUser) -> None:
        await self._stage(report, "hydrate_today", lambda: self.hydrator.hydrate_today_totals_from_cloud(user))
        await self._stage(report, "hydrate_workouts", lambda: self.hydrator.hydrate_recent_workouts_to_local(user))
        await self._stage(report, "hydrate_meals", lambda: self.hydrator.hydrate_recent_meals_to_local(user))

    async def on_regained(self, user: Optional[AuthUser]) -> Optional[dict]:
        """
        Flush and re-hydrate after focus, visibility or connectivity returns.

        Returns:
            Stage report, or None when throttled
        """
        now = self.clock()
        if self._last_regained is not None and now - self._last_regained < self.throttle_seconds:
            logger.debug("Regained-signal refresh throttled")
            return None
        self._last_regained = now

        report: dict = {}
        await self._stage(report, "flush", lambda: self.flusher.flush_pending(max_tries=1))
        if user is not None:
            await self._hydrate(report, user)
        return report

    def attach(self, user_provider: Callable[[], Optional[AuthUser]]) -> Callable[[], None]:
        """
        Re-run flush and hydrate on every regained signal.

        Returns:
            Callable that detaches the listeners
        """
        async def refresh() -> None:
            await self.on_regained(user_provider())

        removers = [self.connectivity.add_listener(signal, refresh) for signal in Signal]

        def detach() -> None:
            for remove in removers:
                remove()

        return detach
