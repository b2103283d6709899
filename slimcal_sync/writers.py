"""
Idempotent local-first writers for workouts, meals and daily metrics.

Every write lands in the local cache immediately and the UI is notified
before any network I/O happens. The remote upsert is then attempted once;
when the device is offline, the user is anonymous, or the remote call fails,
the full record is queued instead. Records carry a client-generated
``client_id`` so replaying a queued write can never duplicate a remote row.
"""

import logging
from typing import Any, Optional

from .cache import LocalCache, meal_calories, workout_calories, workout_day
from .connectivity import ConnectivityMonitor
from .events import EventDomain, EventEmitter
from .flusher import apply_operation
from .models import (
    AuthUser,
    DailyAggregate,
    OperationType,
    WriteResult,
    clamp_calories,
    local_day_iso,
    new_idempotency_key,
    normalize_day_key,
    utc_now_iso,
)
from .operation_queue import OperationQueue
from .remote import RemoteStore

logger = logging.getLogger(__name__)


# =============================================================================
# Derived fields and remote shapes
# =============================================================================

def _line_items(value: Any) -> list[dict]:
    return [item for item in value if isinstance(item, dict)] if isinstance(value, list) else []


def workout_total(record: dict, exercises: list[dict]) -> float:
    """Sum of exercise calories when the exercises carry them, else the declared total."""
    priced = [e for e in exercises if e.get("calories") is not None]
    if priced:
        return sum(clamp_calories(e["calories"]) for e in priced)
    return clamp_calories(record.get("totalCalories", record.get("total_calories")))


def meal_total(meal: dict, items: list[dict]) -> float:
    """Sum of item calories when items carry them, else the declared calories."""
    priced = [i for i in items if i.get("calories") is not None]
    if priced:
        return sum(clamp_calories(i["calories"]) for i in priced)
    return clamp_calories(meal.get("calories", meal.get("total_calories")))


def workout_remote_row(user_id: Optional[str], local: dict) -> dict:
    """Normalized ``workouts`` row for a cached workout session."""
    started_at = local.get("started_at") or utc_now_iso()
    return {
        "user_id": user_id,
        "client_id": local["client_id"],
        "started_at": started_at,
        "ended_at": local.get("ended_at") or started_at,
        "local_day": workout_day(local),
        "total_calories": workout_calories(local),
        "items": {"exercises": _line_items(local.get("exercises"))},
        "notes": local.get("notes"),
        "goal": local.get("goal"),
        "updated_at": utc_now_iso(),
    }


def meal_remote_row(user_id: Optional[str], day: str, meal: dict) -> dict:
    """Normalized ``meals`` row for a cached meal entry."""
    return {
        "user_id": user_id,
        "client_id": meal["client_id"],
        "eaten_at": meal.get("eaten_at") or utc_now_iso(),
        "local_day": day,
        "title": meal.get("name") or meal.get("title") or "Meal",
        "total_calories": meal_calories(meal),
        "protein_g": meal.get("protein_g"),
        "carbs_g": meal.get("carbs_g"),
        "fat_g": meal.get("fat_g"),
        "updated_at": utc_now_iso(),
    }


def _pick(source: dict, *names: str) -> Any:
    for name in names:
        if source.get(name) is not None:
            return source[name]
    return None


# =============================================================================
# Writers
# =============================================================================

class LocalFirstWriter:
    """Optimistic local write, best-effort remote upsert, queue on failure."""

    def __init__(
        self,
        cache: LocalCache,
        queue: OperationQueue,
        remote: RemoteStore,
        events: EventEmitter,
        connectivity: ConnectivityMonitor,
    ):
        self.cache = cache
        self.queue = queue
        self.remote = remote
        self.events = events
        self.connectivity = connectivity

    async def _deliver(
        self,
        op_type: OperationType,
        payload: dict,
        user: Optional[AuthUser],
        result: WriteResult,
    ) -> WriteResult:
        """Push one operation now, or queue it when that is impossible or fails."""
        if not self.connectivity.is_online:
            self.queue.enqueue(op_type, payload)
            result.queued, result.local_only = True, True
            logger.info(f"Offline: queued {op_type.value} for {result.client_id or result.day}")
            return result

        if user is None:
            self.queue.enqueue(op_type, payload)
            result.queued = True
            logger.debug(f"No signed-in user: queued {op_type.value}")
            return result

        try:
            await apply_operation(
                self.remote, op_type.value, payload, day_totals=self.cache.get_day_totals
            )
            result.queued = False
        except Exception as e:
            logger.warning(f"{op_type.value} remote write failed, queueing: {e}")
            self.queue.enqueue(op_type, payload)
            result.queued = True
        return result

    # === Workouts ===

    async def save_workout_local_first(
        self,
        workout: dict,
        user: Optional[AuthUser] = None,
    ) -> WriteResult:
        """
        Save a workout session locally and sync it.

        Args:
            workout: Workout session (local or remote shaped)
            user: Signed-in user, or None for a local-only session

        Returns:
            WriteResult describing where the write ended up
        """
        user_id = user.id if user else None
        record = dict(workout or {})
        client_id = str(record.get("client_id") or record.get("id") or new_idempotency_key())
        started_at = record.get("started_at") or record.get("createdAt") or utc_now_iso()
        day_hint = record.get("local_day") or record.get("date")
        day = normalize_day_key(day_hint) if day_hint else local_day_iso(started_at)
        exercises = _line_items(record.get("exercises"))
        total = workout_total(record, exercises)

        local = {
            **record,
            "id": record.get("id") or client_id,
            "client_id": client_id,
            "date": day,
            "local_day": day,
            "createdAt": record.get("createdAt") or started_at,
            "started_at": started_at,
            "ended_at": record.get("ended_at") or started_at,
            "totalCalories": total,
            "total_calories": total,
            "exercises": exercises,
        }
        if user_id:
            local["user_id"] = user_id

        previous = self.cache.upsert_workout(user_id, local)
        if previous is not None:
            self.cache.apply_delta(user_id, workout_day(previous), burned=-workout_calories(previous))
        totals = self.cache.apply_delta(user_id, day, burned=total)
        self.events.emit_totals(day, totals, EventDomain.BURNED)

        payload = {
            "record": workout_remote_row(user_id, local),
            "day": day,
        }
        result = WriteResult(queued=False, client_id=client_id, day=day, total=total)
        return await self._deliver(OperationType.WORKOUT_UPSERT, payload, user, result)

    async def delete_workout_local_first(
        self,
        client_id: str,
        user: Optional[AuthUser] = None,
    ) -> WriteResult:
        """Remove a workout locally, then delete it remotely by ``client_id``."""
        if not client_id:
            raise ValueError("delete_workout_local_first requires a client_id")
        user_id = user.id if user else None

        removed = self.cache.remove_workout(user_id, client_id)
        payload = {"user_id": user_id, "client_id": client_id}
        result = WriteResult(queued=False, client_id=client_id)
        if removed is not None:
            day = workout_day(removed)
            totals = self.cache.apply_delta(user_id, day, burned=-workout_calories(removed))
            self.events.emit_totals(day, totals, EventDomain.BURNED)
            payload["day"] = result.day = day
        else:
            logger.debug(f"Workout {client_id} not cached locally; deleting remotely only")

        return await self._deliver(OperationType.WORKOUT_DELETE, payload, user, result)

    # === Meals ===

    async def save_meal_local_first(
        self,
        meal: dict,
        user: Optional[AuthUser] = None,
    ) -> WriteResult:
        """
        Save a meal locally and sync it.

        Args:
            meal: Meal entry; ``items`` with calories override ``calories``
            user: Signed-in user, or None for a local-only session

        Returns:
            WriteResult describing where the write ended up
        """
        user_id = user.id if user else None
        record = dict(meal or {})
        client_id = str(record.get("client_id") or record.get("id") or new_idempotency_key())
        eaten_at = _pick(record, "eaten_at", "eatenAt", "created_at", "createdAt") or utc_now_iso()
        day_hint = record.pop("local_day", None) or record.pop("date", None)
        day = normalize_day_key(day_hint) if day_hint else local_day_iso(eaten_at)
        items = _line_items(record.get("items"))
        total = meal_total(record, items)

        local = {
            **record,
            "client_id": client_id,
            "name": _pick(record, "name", "title", "food_name") or "Meal",
            "calories": total,
            "eaten_at": eaten_at,
        }
        if items:
            local["items"] = items
        if user_id:
            local["user_id"] = user_id

        previous = self.cache.upsert_meal(user_id, day, local)
        if previous is not None:
            old_day, old_meal = previous
            self.cache.apply_delta(user_id, old_day, consumed=-meal_calories(old_meal))
        totals = self.cache.apply_delta(user_id, day, consumed=total)
        self.events.emit_totals(day, totals, EventDomain.CONSUMED)

        payload = {
            "record": meal_remote_row(user_id, day, local),
            "day": day,
        }
        result = WriteResult(queued=False, client_id=client_id, day=day, total=total)
        return await self._deliver(OperationType.MEAL_UPSERT, payload, user, result)

    async def delete_meal_local_first(
        self,
        client_id: str,
        user: Optional[AuthUser] = None,
    ) -> WriteResult:
        """Remove a meal locally, then delete it remotely by ``client_id``."""
        if not client_id:
            raise ValueError("delete_meal_local_first requires a client_id")
        user_id = user.id if user else None

        removed = self.cache.remove_meal(user_id, client_id)
        payload = {"user_id": user_id, "client_id": client_id}
        result = WriteResult(queued=False, client_id=client_id)
        if removed is not None:
            day, old_meal = removed
            totals = self.cache.apply_delta(user_id, day, consumed=-meal_calories(old_meal))
            self.events.emit_totals(day, totals, EventDomain.CONSUMED)
            payload["day"] = result.day = day
        else:
            logger.debug(f"Meal {client_id} not cached locally; deleting remotely only")

        return await self._deliver(OperationType.MEAL_DELETE, payload, user, result)

    # === Daily metrics ===

    async def upsert_daily_metric_local_first(
        self,
        metric: dict,
        user: Optional[AuthUser] = None,
    ) -> WriteResult:
        """Overwrite one day's totals locally and upsert them by ``(user, local_day)``."""
        user_id = user.id if user else None
        metric = dict(metric or {})
        day_hint = _pick(metric, "local_day", "day", "date")
        day = normalize_day_key(day_hint) if day_hint else local_day_iso()
        totals = DailyAggregate(
            consumed=clamp_calories(_pick(metric, "calories_eaten", "cals_eaten", "consumed", "eaten")),
            burned=clamp_calories(_pick(metric, "calories_burned", "cals_burned", "burned")),
        )

        self.cache.set_day_totals(user_id, day, totals)
        self.events.emit_totals(day, totals)

        payload = {"record": totals.to_remote(user_id, day)}
        result = WriteResult(queued=False, day=day, total=totals.net)
        return await self._deliver(OperationType.DAILY_METRIC_UPSERT, payload, user, result)
