"""
Cloud Hydrator.

Pulls canonical remote state into the local cache so data written on another
device shows up here. Two precedence policies apply:

- today's aggregate: the remote row wins and overwrites the local snapshot
  (a missing row zeroes it)
- calorie history: local wins; remote rows only fill days with no local entry
"""

import logging
from datetime import date, timedelta
from typing import Mapping, Optional

from .cache import LocalCache
from .connectivity import ConnectivityMonitor
from .events import EventDomain, EventEmitter, SyncEvent
from .models import (
    AuthUser,
    DailyAggregate,
    HydrationResult,
    clamp_calories,
    local_day_iso,
    normalize_day_key,
)
from .remote import RemoteStore

logger = logging.getLogger(__name__)


def merge_calorie_history(
    local: Mapping[str, dict],
    cloud: Mapping[str, dict],
) -> dict[str, dict]:
    """
    Merge per-day calorie history, local wins.

    Any day with a local entry keeps it untouched, whatever the cloud says.
    Cloud rows only fill in days the device has never recorded.
    """
    merged = {day: dict(row) for day, row in cloud.items() if isinstance(row, dict)}
    merged.update({day: dict(row) for day, row in local.items() if isinstance(row, dict)})
    return dict(sorted(merged.items()))


def workout_from_remote(row: dict) -> dict:
    """Local-cache shape of a remote workout row."""
    day = normalize_day_key(row.get("local_day")) if row.get("local_day") else local_day_iso(row.get("started_at"))
    items = row.get("items") if isinstance(row.get("items"), dict) else {}
    exercises = items.get("exercises") if isinstance(items.get("exercises"), list) else []
    total = clamp_calories(row.get("total_calories"))
    return {
        "id": row["client_id"],
        "client_id": row["client_id"],
        "date": day,
        "local_day": day,
        "started_at": row.get("started_at"),
        "ended_at": row.get("ended_at"),
        "totalCalories": total,
        "total_calories": total,
        "exercises": exercises,
        "user_id": row.get("user_id"),
        "uploaded": True,
    }


def meal_from_remote(row: dict) -> tuple[str, dict]:
    """``(day, local meal)`` for a remote meal row."""
    day = normalize_day_key(row.get("local_day")) if row.get("local_day") else local_day_iso(row.get("eaten_at"))
    return day, {
        "client_id": row["client_id"],
        "name": row.get("title") or "Meal",
        "calories": clamp_calories(row.get("total_calories")),
        "eaten_at": row.get("eaten_at"),
        "user_id": row.get("user_id"),
    }


class CloudHydrator:
    """Merges remote rows into the local cache and announces the changes."""

    def __init__(
        self,
        cache: LocalCache,
        remote: RemoteStore,
        events: EventEmitter,
        connectivity: ConnectivityMonitor,
        recent_days: int = 14,
    ):
        self.cache = cache
        self.remote = remote
        self.events = events
        self.connectivity = connectivity
        self.recent_days = recent_days

    def _unavailable(self, user: Optional[AuthUser]) -> Optional[str]:
        if user is None:
            return "no-user"
        if not self.connectivity.is_online:
            return "offline"
        return None

    def _since(self, days: Optional[int]) -> str:
        window = max(1, days or self.recent_days)
        return (date.today() - timedelta(days=window - 1)).isoformat()

    async def hydrate_today_totals_from_cloud(self, user: Optional[AuthUser]) -> HydrationResult:
        """Overwrite today's local totals with the remote row (zero when absent)."""
        reason = self._unavailable(user)
        if reason:
            return HydrationResult(ok=False, reason=reason)

        day = local_day_iso()
        try:
            row = await self.remote.fetch_daily_metric(user.id, day)
        except Exception as e:
            logger.warning(f"Could not read today's totals from cloud: {e}")
            return HydrationResult(ok=False, day=day, reason=str(e))

        totals = DailyAggregate.from_remote(row) if row else DailyAggregate()
        if row is None:
            logger.info(f"No cloud totals for {day}; zeroing local snapshot")
        self.cache.set_day_totals(user.id, day, totals)
        self.events.emit_totals(day, totals)
        return HydrationResult(ok=True, day=day, totals=totals)

    async def hydrate_recent_workouts_to_local(
        self,
        user: Optional[AuthUser],
        days: Optional[int] = None,
    ) -> HydrationResult:
        """Add the last ``days`` days of remote workouts missing from local history."""
        reason = self._unavailable(user)
        if reason:
            return HydrationResult(ok=False, reason=reason)

        try:
            rows = await self.remote.fetch_workouts(user.id, self._since(days))
        except Exception as e:
            logger.warning(f"Could not read recent workouts from cloud: {e}")
            return HydrationResult(ok=False, reason=str(e))

        records = [workout_from_remote(r) for r in rows if r.get("client_id")]
        added = self.cache.merge_workouts(user.id, records)
        today = local_day_iso()
        self.events.emit(SyncEvent(
            domain=EventDomain.WORKOUT_HISTORY,
            day=today,
            totals=self.cache.get_day_totals(user.id, today),
        ))
        logger.info(f"Hydrated {added} workouts from {len(rows)} cloud rows")
        return HydrationResult(ok=True, day=today, merged=added)

    async def hydrate_recent_meals_to_local(
        self,
        user: Optional[AuthUser],
        days: Optional[int] = None,
    ) -> HydrationResult:
        """Add the last ``days`` days of remote meals missing from local history."""
        reason = self._unavailable(user)
        if reason:
            return HydrationResult(ok=False, reason=reason)

        try:
            rows = await self.remote.fetch_meals(user.id, self._since(days))
        except Exception as e:
            logger.warning(f"Could not read recent meals from cloud: {e}")
            return HydrationResult(ok=False, reason=str(e))

        by_day: dict[str, list[dict]] = {}
        for row in rows:
            if not row.get("client_id"):
                continue
            day, meal = meal_from_remote(row)
            by_day.setdefault(day, []).append(meal)
        added = self.cache.merge_meals(user.id, by_day)
        today = local_day_iso()
        self.events.emit(SyncEvent(
            domain=EventDomain.MEAL_HISTORY,
            day=today,
            totals=self.cache.get_day_totals(user.id, today),
        ))
        logger.info(f"Hydrated {added} meals from {len(rows)} cloud rows")
        return HydrationResult(ok=True, day=today, merged=added)

    async def calorie_history(self, user: Optional[AuthUser], days: int = 30) -> dict[str, dict]:
        """
        Per-day ``{eaten, burned, net}`` for the last ``days`` days.

        Local entries win; cloud rows fill the gaps. Cloud failures degrade to
        local-only history.
        """
        start = self._since(days)
        end = local_day_iso()
        user_id = user.id if user else None
        local = {
            day: row for day, row in self.cache.day_history(user_id).items()
            if start <= day <= end
        }

        cloud: dict[str, dict] = {}
        if not self._unavailable(user):
            try:
                rows = await self.remote.fetch_daily_metrics(user.id, start, end)
            except Exception as e:
                logger.warning(f"Could not read calorie history from cloud: {e}")
                rows = []
            for row in rows:
                day_key = row.get("local_day") or row.get("day")
                if not day_key:
                    continue
                totals = DailyAggregate.from_remote(row)
                cloud[normalize_day_key(day_key)] = {
                    "eaten": totals.consumed,
                    "burned": totals.burned,
                    "net": totals.net,
                }

        return merge_calorie_history(local, cloud)
