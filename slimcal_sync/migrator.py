"""
One-time migration of local-only history to the cloud.

Devices that tracked meals and workouts before sync existed hold history the
remote store has never seen. The first signed-in session uploads all of it,
folds it into per-day aggregates, and records a completion sentinel so the
upload never runs again.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .cache import LocalCache, meal_calories, workout_calories, workout_day
from .connectivity import ConnectivityMonitor
from .flusher import apply_operation
from .identity import ensure_scoped_from_legacy
from .models import (
    AuthUser,
    DailyAggregate,
    Keys,
    OperationType,
    local_noon_iso,
    new_idempotency_key,
    normalize_day_key,
    utc_now_iso,
)
from .remote import RemoteStore
from .storage import Storage
from .writers import meal_remote_row, workout_remote_row

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    """What a migration run did."""
    ok: bool
    skipped: Optional[str] = None
    workouts: int = 0
    meals: int = 0
    days: int = 0
    errors: list[str] = field(default_factory=list)


class LocalMigrator:
    """Uploads pre-sync local history exactly once per device."""

    def __init__(
        self,
        storage: Storage,
        cache: LocalCache,
        remote: RemoteStore,
        connectivity: ConnectivityMonitor,
    ):
        self.storage = storage
        self.cache = cache
        self.remote = remote
        self.connectivity = connectivity

    def is_migrated(self) -> bool:
        return self.storage.get(Keys.LOCAL_MIGRATED) == "1"

    def _mark_migrated(self) -> None:
        self.storage.set(Keys.LOCAL_MIGRATED, "1")

    def _prepare_workouts(self, user_id: str) -> list[dict]:
        """Give every cached workout a key and timestamps, persisting new keys."""
        history = self.cache.read_workout_history(user_id)
        changed = False
        for w in history:
            if not w.get("client_id"):
                w["client_id"] = str(w.get("id") or new_idempotency_key())
                changed = True
            if not w.get("started_at"):
                w["started_at"] = w.get("createdAt") or local_noon_iso(workout_day(w))
                changed = True
        if changed:
            self.cache.write_workout_history(user_id, history)
        return history

    def _prepare_meals(self, user_id: str) -> list[tuple[str, dict]]:
        """Flatten meal history to ``(day, meal)`` with keys and timestamps, persisting new keys."""
        history = self.cache.read_meal_history(user_id)
        changed = False
        flat = []
        for bucket in history:
            day = normalize_day_key(bucket.get("date"))
            for m in bucket["meals"]:
                if not m.get("client_id"):
                    m["client_id"] = new_idempotency_key()
                    changed = True
                if not m.get("eaten_at"):
                    m["eaten_at"] = (
                        m.get("eatenAt") or m.get("createdAt") or m.get("created_at")
                        or local_noon_iso(day)
                    )
                    changed = True
                flat.append((day, m))
        if changed:
            self.cache.write_meal_history(user_id, history)
        return flat

    def _day_totals(
        self,
        user_id: str,
        workouts: list[dict],
        meals: list[tuple[str, dict]],
    ) -> dict[str, DailyAggregate]:
        totals: dict[str, DailyAggregate] = {}
        for day, m in meals:
            totals.setdefault(day, DailyAggregate()).consumed += meal_calories(m)
        for w in workouts:
            totals.setdefault(workout_day(w), DailyAggregate()).burned += workout_calories(w)

        # Cached totals can include entries whose line items were never kept
        for day, row in self.cache.read_daily_cache(user_id).items():
            cached = DailyAggregate.from_cache(row)
            if not cached.consumed and not cached.burned:
                continue
            agg = totals.setdefault(normalize_day_key(day), DailyAggregate())
            agg.consumed = max(agg.consumed, cached.consumed)
            agg.burned = max(agg.burned, cached.burned)
        return totals

    async def migrate_local_to_cloud(self, user: Optional[AuthUser]) -> MigrationReport:
        """
        Upload all local history once.

        The completion flag is written only after every upload succeeded. On
        any failure the run stops, the flag stays unset, and the next session
        retries the whole migration; keys generated for legacy records are
        persisted first so a retry upserts the same rows.

        Args:
            user: Signed-in user that will own the uploaded history

        Returns:
            MigrationReport
        """
        if self.is_migrated():
            return MigrationReport(ok=True, skipped="already-migrated")
        if user is None:
            return MigrationReport(ok=True, skipped="no-user")
        if not self.connectivity.is_online:
            return MigrationReport(ok=False, skipped="offline")

        for base in Keys.SCOPED:
            ensure_scoped_from_legacy(self.storage, base, user.id)

        report = MigrationReport(ok=True)
        try:
            workouts = self._prepare_workouts(user.id)
            meals = self._prepare_meals(user.id)

            for w in workouts:
                await apply_operation(
                    self.remote,
                    OperationType.WORKOUT_UPSERT.value,
                    {"record": workout_remote_row(user.id, w)},
                )
                report.workouts += 1

            for day, m in meals:
                await apply_operation(
                    self.remote,
                    OperationType.MEAL_UPSERT.value,
                    {"record": meal_remote_row(user.id, day, m)},
                )
                report.meals += 1

            for day, totals in sorted(self._day_totals(user.id, workouts, meals).items()):
                await apply_operation(
                    self.remote,
                    OperationType.DAILY_METRIC_UPSERT.value,
                    {"record": totals.to_remote(user.id, day)},
                )
                report.days += 1
        except Exception as e:
            logger.error(f"Local-to-cloud migration failed; will retry next session: {e}")
            report.ok = False
            report.errors.append(str(e))
            return report

        self._mark_migrated()
        logger.info(
            f"Migrated {report.workouts} workouts, {report.meals} meals, "
            f"{report.days} daily totals at {utc_now_iso()}"
        )
        return report
