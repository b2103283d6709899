"""
Local Cache Store.

JSON documents under user-scoped keys, shaped for the UI:

- ``workoutHistory[:userId]``: list of workout sessions
- ``mealHistory[:userId]``: list of ``{date, meals: [...]}`` day buckets
- ``dailyMetricsCache[:userId]``: map of local day to ``{consumed, burned, net, updated_at}``

Reads are defensive: corrupted values come back empty, records owned by
another account are dropped (and the cleaned list written back).
"""

import logging
from typing import Any, Optional

from .identity import ensure_scoped_from_legacy, scoped_key
from .models import (
    DailyAggregate,
    Keys,
    clamp_calories,
    normalize_day_key,
    record_owner,
)
from .storage import Storage, read_json, write_json

logger = logging.getLogger(__name__)


def workout_day(record: dict) -> str:
    return normalize_day_key(record.get("local_day") or record.get("date"))


def workout_calories(record: dict) -> float:
    return clamp_calories(record.get("totalCalories", record.get("total_calories")))


def meal_calories(meal: dict) -> float:
    return clamp_calories(meal.get("calories", meal.get("total_calories")))


class LocalCache:
    """Typed access to the per-user local JSON documents."""

    def __init__(self, storage: Storage):
        self.storage = storage

    # === Raw access ===

    def _read_list(self, base: str, user_id: Optional[str]) -> list:
        ensure_scoped_from_legacy(self.storage, base, user_id)
        key = scoped_key(base, user_id)
        value = read_json(self.storage, key, [])
        items = [r for r in value if isinstance(r, dict)] if isinstance(value, list) else []
        if user_id:
            cleaned = [r for r in items if record_owner(r) in (None, str(user_id))]
            if len(cleaned) != len(items):
                logger.warning(f"Removed {len(items) - len(cleaned)} foreign records from {key}")
                write_json(self.storage, key, cleaned)
            items = cleaned
        return items

    def _write(self, base: str, user_id: Optional[str], value: Any) -> None:
        write_json(self.storage, scoped_key(base, user_id), value)

    # === Workouts ===

    def read_workout_history(self, user_id: Optional[str]) -> list[dict]:
        return self._read_list(Keys.WORKOUT_HISTORY, user_id)

    def write_workout_history(self, user_id: Optional[str], history: list[dict]) -> None:
        self._write(Keys.WORKOUT_HISTORY, user_id, history)

    def upsert_workout(self, user_id: Optional[str], record: dict) -> Optional[dict]:
        """Insert or replace a workout by ``client_id``. Returns the previous entry."""
        history = self.read_workout_history(user_id)
        cid = str(record["client_id"])
        previous = None
        for i, existing in enumerate(history):
            if str(existing.get("client_id") or existing.get("id") or "") == cid:
                previous = existing
                history[i] = {**existing, **record}
                break
        else:
            history.append(record)
        self.write_workout_history(user_id, history)
        return previous

    def remove_workout(self, user_id: Optional[str], client_id: str) -> Optional[dict]:
        history = self.read_workout_history(user_id)
        kept, removed = [], None
        for existing in history:
            if removed is None and str(existing.get("client_id") or existing.get("id") or "") == str(client_id):
                removed = existing
            else:
                kept.append(existing)
        if removed is not None:
            self.write_workout_history(user_id, kept)
        return removed

    def merge_workouts(self, user_id: Optional[str], records: list[dict]) -> int:
        """Add workouts whose ``client_id`` is not cached yet. Returns count added."""
        history = self.read_workout_history(user_id)
        known = {str(w.get("client_id") or w.get("id") or "") for w in history}
        added = 0
        for record in records:
            cid = str(record.get("client_id") or "")
            if not cid or cid in known:
                continue
            history.append(record)
            known.add(cid)
            added += 1
        if added:
            self.write_workout_history(user_id, history)
        return added

    # === Meals ===

    def read_meal_history(self, user_id: Optional[str]) -> list[dict]:
        buckets = self._read_list(Keys.MEAL_HISTORY, user_id)
        for bucket in buckets:
            if not isinstance(bucket.get("meals"), list):
                bucket["meals"] = []
            bucket["meals"] = [m for m in bucket["meals"] if isinstance(m, dict)]
        return buckets

    def write_meal_history(self, user_id: Optional[str], history: list[dict]) -> None:
        self._write(Keys.MEAL_HISTORY, user_id, history)

    def upsert_meal(self, user_id: Optional[str], day: str, meal: dict) -> Optional[tuple[str, dict]]:
        """
        Insert or replace a meal by ``client_id`` inside its day bucket.

        A meal that moved to another day is taken out of its old bucket.

        Returns:
            ``(old_day, old_meal)`` when the meal was already cached
        """
        history = self.read_meal_history(user_id)
        previous = self._pop_meal(history, str(meal["client_id"]))
        bucket = next((b for b in history if normalize_day_key(b.get("date")) == day), None)
        if bucket is None:
            bucket = {"date": day, "meals": []}
            history.append(bucket)
        if previous is not None and previous[0] == day:
            bucket["meals"].insert(previous[2], {**previous[1], **meal})
        else:
            bucket["meals"].append(meal)
        self.write_meal_history(user_id, [b for b in history if b["meals"] or b is bucket])
        return (previous[0], previous[1]) if previous else None

    def remove_meal(self, user_id: Optional[str], client_id: str) -> Optional[tuple[str, dict]]:
        history = self.read_meal_history(user_id)
        previous = self._pop_meal(history, str(client_id))
        if previous is None:
            return None
        self.write_meal_history(user_id, [b for b in history if b["meals"]])
        return previous[0], previous[1]

    @staticmethod
    def _pop_meal(history: list[dict], client_id: str) -> Optional[tuple[str, dict, int]]:
        for bucket in history:
            for i, meal in enumerate(bucket["meals"]):
                if str(meal.get("client_id") or "") == client_id:
                    del bucket["meals"][i]
                    return normalize_day_key(bucket.get("date")), meal, i
        return None

    def merge_meals(self, user_id: Optional[str], meals_by_day: dict[str, list[dict]]) -> int:
        """Add meals whose ``client_id`` is not cached yet. Returns count added."""
        history = self.read_meal_history(user_id)
        known = {
            str(m.get("client_id") or "")
            for bucket in history for m in bucket["meals"]
        }
        added = 0
        for day, meals in meals_by_day.items():
            bucket = next((b for b in history if normalize_day_key(b.get("date")) == day), None)
            for meal in meals:
                cid = str(meal.get("client_id") or "")
                if not cid or cid in known:
                    continue
                if bucket is None:
                    bucket = {"date": day, "meals": []}
                    history.append(bucket)
                bucket["meals"].append(meal)
                known.add(cid)
                added += 1
        if added:
            self.write_meal_history(user_id, history)
        return added

    # === Daily totals ===

    def read_daily_cache(self, user_id: Optional[str]) -> dict[str, dict]:
        ensure_scoped_from_legacy(self.storage, Keys.DAILY_METRICS_CACHE, user_id)
        value = read_json(self.storage, scoped_key(Keys.DAILY_METRICS_CACHE, user_id), {})
        if not isinstance(value, dict):
            return {}
        return {k: v for k, v in value.items() if isinstance(v, dict)}

    def get_day_totals(self, user_id: Optional[str], day: str) -> DailyAggregate:
        return DailyAggregate.from_cache(self.read_daily_cache(user_id).get(day))

    def set_day_totals(self, user_id: Optional[str], day: str, totals: DailyAggregate) -> DailyAggregate:
        cache = self.read_daily_cache(user_id)
        cache[day] = totals.to_cache()
        self._write(Keys.DAILY_METRICS_CACHE, user_id, cache)
        return totals

    def apply_delta(
        self,
        user_id: Optional[str],
        day: str,
        consumed: float = 0.0,
        burned: float = 0.0,
    ) -> DailyAggregate:
        """Fold a change into one day's totals, never going below zero."""
        current = self.get_day_totals(user_id, day)
        updated = DailyAggregate(
            consumed=max(0.0, current.consumed + consumed),
            burned=max(0.0, current.burned + burned),
        )
        return self.set_day_totals(user_id, day, updated)

    def day_history(self, user_id: Optional[str]) -> dict[str, dict]:
        """
        Per-day ``{eaten, burned, net}`` known locally.

        Days in the daily cache come from it directly; days that only appear
        in meal or workout history are summed from those records.
        """
        history: dict[str, dict] = {}
        for day, row in self.read_daily_cache(user_id).items():
            totals = DailyAggregate.from_cache(row)
            history[normalize_day_key(day)] = _history_row(totals)

        summed: dict[str, DailyAggregate] = {}
        for bucket in self.read_meal_history(user_id):
            day = normalize_day_key(bucket.get("date"))
            agg = summed.setdefault(day, DailyAggregate())
            agg.consumed += sum(meal_calories(m) for m in bucket["meals"])
        for workout in self.read_workout_history(user_id):
            agg = summed.setdefault(workout_day(workout), DailyAggregate())
            agg.burned += workout_calories(workout)

        for day, totals in summed.items():
            history.setdefault(day, _history_row(totals))
        return history


def _history_row(totals: DailyAggregate) -> dict:
    return {"eaten": totals.consumed, "burned": totals.burned, "net": totals.net}
