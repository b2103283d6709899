"""
Data models for the SlimCal sync engine.

Plain dataclasses for everything the engine persists or returns, plus the
small number/day helpers every component shares.
"""

import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional


# =============================================================================
# Storage keys
# =============================================================================

class Keys:
    """Base keys of the persisted local state."""
    PENDING_OPS = "pendingOps"
    PENDING_OPS_DEAD = "pendingOps:dead"
    PENDING_OPS_LEASE = "pendingOps:lease"
    WORKOUT_HISTORY = "workoutHistory"
    MEAL_HISTORY = "mealHistory"
    DAILY_METRICS_CACHE = "dailyMetricsCache"
    CLIENT_ID = "clientId"
    LOCAL_MIGRATED = "localMigrated"

    # Keys that are namespaced per signed-in user
    SCOPED = (WORKOUT_HISTORY, MEAL_HISTORY, DAILY_METRICS_CACHE)


# =============================================================================
# Helpers
# =============================================================================

_US_DAY = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_ISO_DAY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def safe_num(value: Any, default: float = 0.0) -> float:
    """Coerce to a finite float, falling back to ``default``."""
    if isinstance(value, bool):
        return default
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    return n if math.isfinite(n) else default


def clamp_calories(value: Any) -> float:
    """Finite, non-negative calorie value."""
    return max(0.0, safe_num(value, 0.0))


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_idempotency_key() -> str:
    return str(uuid.uuid4())


def local_day_iso(when: Optional[Any] = None) -> str:
    """
    Calendar day in device-local time as ``YYYY-MM-DD``.

    Accepts a date, a datetime (aware datetimes are converted to local time),
    an ISO timestamp string, or None for today.
    """
    if when is None:
        return date.today().isoformat()
    if isinstance(when, datetime):
        if when.tzinfo is not None:
            when = when.astimezone()
        return when.date().isoformat()
    if isinstance(when, date):
        return when.isoformat()
    text = str(when).strip()
    if _ISO_DAY.match(text):
        return text
    try:
        return local_day_iso(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return normalize_day_key(text)


def normalize_day_key(day_key: Any) -> str:
    """Normalize legacy ``M/D/YYYY`` (or ISO) day keys to ISO; today otherwise."""
    text = str(day_key or "").strip()
    if _ISO_DAY.match(text):
        return text
    m = _US_DAY.match(text)
    if m:
        month, day, year = m.groups()
        return f"{year}-{int(month):02d}-{int(day):02d}"
    return date.today().isoformat()


def local_noon_iso(day_iso: str) -> str:
    """Timestamp at local noon of ``day_iso`` (anchors legacy records to their day)."""
    d = date.fromisoformat(day_iso)
    return datetime(d.year, d.month, d.day, 12, 0, 0).astimezone().isoformat()


def record_owner(record: Any) -> Optional[str]:
    """The user a cached record declares it belongs to, if any."""
    if not isinstance(record, dict):
        return None
    owner = record.get("user_id") or record.get("userId")
    if not owner and isinstance(record.get("user"), dict):
        owner = record["user"].get("id")
    return str(owner) if owner else None


# =============================================================================
# Domain types
# =============================================================================

@dataclass(frozen=True)
class AuthUser:
    """Authenticated user context. ``None`` in its place means local-only."""
    id: str
    email: Optional[str] = None


@dataclass
class DailyAggregate:
    """Calories consumed and burned on one local day."""
    consumed: float = 0.0
    burned: float = 0.0

    @property
    def net(self) -> float:
        return self.consumed - self.burned

    def to_cache(self) -> dict:
        return {
            "consumed": self.consumed,
            "burned": self.burned,
            "net": self.net,
            "updated_at": utc_now_iso(),
        }

    def to_remote(self, user_id: Optional[str], day: str) -> dict:
        return {
            "user_id": user_id,
            "local_day": day,
            "calories_eaten": self.consumed,
            "calories_burned": self.burned,
            "net_calories": self.net,
            "updated_at": utc_now_iso(),
        }

    @classmethod
    def from_cache(cls, row: Any) -> "DailyAggregate":
        """Build from a cached row, tolerating legacy column names."""
        if not isinstance(row, dict):
            return cls()
        return cls(
            consumed=clamp_calories(_first_present(row, "consumed", "eaten", "calories_eaten")),
            burned=clamp_calories(_first_present(row, "burned", "calories_burned")),
        )

    @classmethod
    def from_remote(cls, row: Any) -> "DailyAggregate":
        """Build from a remote daily metric row (current or legacy schema)."""
        if not isinstance(row, dict):
            return cls()
        return cls(
            consumed=clamp_calories(
                _first_present(row, "calories_eaten", "cals_eaten", "consumed", "eaten")
            ),
            burned=clamp_calories(
                _first_present(row, "calories_burned", "cals_burned", "burned")
            ),
        )


def _first_present(row: dict, *names: str) -> Any:
    for name in names:
        if row.get(name) is not None:
            return row[name]
    return 0


class OperationType(str, Enum):
    """Mutation intents the queue can carry."""
    WORKOUT_UPSERT = "workout.upsert"
    WORKOUT_DELETE = "workout.delete"
    MEAL_UPSERT = "meal.upsert"
    MEAL_DELETE = "meal.delete"
    DAILY_METRIC_UPSERT = "daily_metric.upsert"


@dataclass
class PendingOperation:
    """A queued mutation awaiting remote delivery."""
    type: str
    payload: dict
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ts: int = field(default_factory=now_ms)
    retry_count: int = 0
    next_after: int = 0
    device_id: Optional[str] = None
    last_error: Optional[str] = None

    def is_due(self, at_ms: int) -> bool:
        return self.next_after <= at_ms

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "ts": self.ts,
            "retry_count": self.retry_count,
            "next_after": self.next_after,
            "device_id": self.device_id,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PendingOperation":
        """Create from dictionary."""
        return cls(
            id=str(d["id"]),
            type=str(d["type"]),
            payload=d.get("payload") if isinstance(d.get("payload"), dict) else {},
            ts=int(safe_num(d.get("ts"), 0)),
            retry_count=int(safe_num(d.get("retry_count"), 0)),
            next_after=int(safe_num(d.get("next_after"), 0)),
            device_id=d.get("device_id"),
            last_error=d.get("last_error"),
        )


# =============================================================================
# Results
# =============================================================================

@dataclass
class WriteResult:
    """Outcome of a local-first write."""
    queued: bool
    local_only: bool = False
    client_id: Optional[str] = None
    day: Optional[str] = None
    total: float = 0.0


@dataclass
class FlushResult:
    """Outcome of draining the operation queue."""
    flushed: int = 0
    failed: int = 0
    skipped: int = 0
    dropped: int = 0
    remaining: int = 0
    locked: bool = False
    offline: bool = False

    def to_dict(self) -> dict:
        return {
            "flushed": self.flushed,
            "failed": self.failed,
            "skipped": self.skipped,
            "dropped": self.dropped,
            "remaining": self.remaining,
            "locked": self.locked,
            "offline": self.offline,
        }


@dataclass
class HydrationResult:
    """Outcome of pulling remote state into the local cache."""
    ok: bool
    day: Optional[str] = None
    totals: Optional[DailyAggregate] = None
    merged: int = 0
    reason: Optional[str] = None
