"""
SlimCal Sync Engine

Facade that wires the sync components to one storage backend and one remote
store, and exposes them as a single object.

Features:
- Local-first writes for workouts, meals and daily metrics
- Durable operation queue with capped exponential backoff
- Cloud hydration (remote wins for today, local wins for history)
- One-time migration of pre-sync local history
- Bootstrap on sign-in and refresh when connectivity or focus returns
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from .bootstrap import BootstrapOrchestrator
from .cache import LocalCache
from .config import SyncSettings, get_settings
from .connectivity import ConnectivityMonitor
from .events import EventEmitter
from .flusher import QueueFlusher
from .hydrator import CloudHydrator
from .identity import get_or_create_client_id
from .migrator import LocalMigrator, MigrationReport
from .models import AuthUser, FlushResult, HydrationResult, WriteResult
from .operation_queue import OperationQueue
from .remote import RemoteStore
from .storage import Storage
from .writers import LocalFirstWriter

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Offline-first reconciliation between a local cache and a remote store.

    Usage:
        engine = SyncEngine(storage, remote)
        await engine.start(AuthUser(id="u1"))
        await engine.save_meal_local_first({"name": "Oats", "calories": 450})
    """

    def __init__(
        self,
        storage: Storage,
        remote: RemoteStore,
        settings: Optional[SyncSettings] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        events: Optional[EventEmitter] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.storage = storage
        self.remote = remote
        self.connectivity = connectivity or ConnectivityMonitor()
        self.events = events or EventEmitter()
        self.user: Optional[AuthUser] = None
        self._detach: Optional[Callable[[], None]] = None

        self.client_id = get_or_create_client_id(storage)
        self.cache = LocalCache(storage)
        self.queue = OperationQueue(
            storage,
            device_id=self.client_id,
            clock=clock,
            backoff_base_ms=self.settings.backoff_base_ms,
            backoff_cap_ms=self.settings.backoff_cap_ms,
            max_retry_count=self.settings.max_retry_count,
            lease_ms=self.settings.queue_lease_ms,
        )
        self.writer = LocalFirstWriter(
            self.cache,
            self.queue,
            remote,
            self.events,
            self.connectivity,
        )
        self.flusher = QueueFlusher(
            self.queue,
            remote,
            self.connectivity,
            user_provider=lambda: self.user,
            day_totals=self.cache.get_day_totals,
            retry_delay=self.settings.flush_retry_delay,
            sleep=sleep,
        )
        self.hydrator = CloudHydrator(
            self.cache,
            remote,
            self.events,
            self.connectivity,
            recent_days=self.settings.recent_history_days,
        )
        self.migrator = LocalMigrator(storage, self.cache, remote, self.connectivity)
        self.orchestrator = BootstrapOrchestrator(
            self.migrator,
            self.flusher,
            self.hydrator,
            self.connectivity,
            throttle_seconds=self.settings.bootstrap_throttle,
            clock=monotonic,
        )

    # === Session lifecycle ===

    def set_user(self, user: Optional[AuthUser]) -> None:
        """Switch the signed-in user (None for local-only)."""
        if user != self.user:
            logger.info(f"Sync user changed to {user.id if user else 'anonymous'}")
        self.user = user

    async def start(self, user: Optional[AuthUser] = None) -> dict:
        """
        Sign in, run the bootstrap sequence and start reacting to regained signals.

        Returns:
            Per-stage bootstrap report
        """
        self.set_user(user)
        if self._detach is None:
            self._detach = self.orchestrator.attach(lambda: self.user)
        return await self.orchestrator.bootstrap(self.user)

    async def stop(self) -> None:
        """Detach listeners and release the remote client."""
        if self._detach is not None:
            self._detach()
            self._detach = None
        await self.remote.close()

    # === Writes ===

    async def save_workout_local_first(self, workout: dict) -> WriteResult:
        return await self.writer.save_workout_local_first(workout, self.user)

    async def delete_workout_local_first(self, client_id: str) -> WriteResult:
        return await self.writer.delete_workout_local_first(client_id, self.user)

    async def save_meal_local_first(self, meal: dict) -> WriteResult:
        return await self.writer.save_meal_local_first(meal, self.user)

    async def delete_meal_local_first(self, client_id: str) -> WriteResult:
        return await self.writer.delete_meal_local_first(client_id, self.user)

    async def upsert_daily_metric_local_first(self, metric: dict) -> WriteResult:
        return await self.writer.upsert_daily_metric_local_first(metric, self.user)

    # === Sync ===

    async def flush_pending(self, max_tries: int = 2) -> FlushResult:
        return await self.flusher.flush_pending(max_tries=max_tries)

    async def hydrate_today_totals_from_cloud(self) -> HydrationResult:
        return await self.hydrator.hydrate_today_totals_from_cloud(self.user)

    async def hydrate_recent_workouts_to_local(self, days: Optional[int] = None) -> HydrationResult:
        return await self.hydrator.hydrate_recent_workouts_to_local(self.user, days)

    async def hydrate_recent_meals_to_local(self, days: Optional[int] = None) -> HydrationResult:
        return await self.hydrator.hydrate_recent_meals_to_local(self.user, days)

    async def migrate_local_to_cloud(self) -> MigrationReport:
        return await self.migrator.migrate_local_to_cloud(self.user)

    async def calorie_history(self, days: int = 30) -> dict[str, dict]:
        return await self.hydrator.calorie_history(self.user, days)

    # === Utility Methods ===

    def get_sync_status(self) -> dict:
        """Get current sync status information."""
        status = {
            "client_id": self.client_id,
            "user_id": self.user.id if self.user else None,
            "online": self.connectivity.is_online,
            "migrated": self.migrator.is_migrated(),
            "queue_stats": self.queue.stats(),
        }
        rate_limiter = getattr(self.remote, "rate_limiter", None)
        if rate_limiter is not None:
            status["rate_limit_remaining"] = {
                "minute": rate_limiter.remaining_minute,
                "hour": rate_limiter.remaining_hour,
            }
        return status


@asynccontextmanager
async def sync_engine(
    storage: Storage,
    remote: RemoteStore,
    user: Optional[AuthUser] = None,
    **kwargs,
):
    """
    Context manager for a sync session.

    Usage:
        async with sync_engine(storage, remote, user) as engine:
            await engine.save_workout_local_first(workout)
    """
    engine = SyncEngine(storage, remote, **kwargs)
    try:
        await engine.start(user)
        yield engine
    finally:
        await engine.stop()
