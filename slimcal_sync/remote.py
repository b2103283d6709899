"""
Remote durable store.

The engine talks to the shared source of truth through ``RemoteStore``:
upsert-by-key and delete-by-key for workouts, meals and daily metrics, plus
point and range reads filtered by user and day. Two implementations ship:

- ``RestRemoteStore``: PostgREST-compatible HTTP client (httpx) with rate
  limiting and exponential backoff on transient failures
- ``InMemoryRemoteStore``: dict-backed store with the same upsert semantics,
  used in tests and offline demos
"""

import asyncio
import logging
import random
import re
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Awaitable, Callable, Optional

import httpx

from .config import SyncSettings, get_settings

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class SyncError(Exception):
    """Base exception for remote operations."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(SyncError):
    """Missing user or rejected credentials."""
    pass


class RateLimitError(SyncError):
    """Rate limit exceeded."""
    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class NetworkError(SyncError):
    """Network-related error."""
    pass


# =============================================================================
# Port
# =============================================================================

class RemoteStore(ABC):
    """Contract the sync engine consumes from the backend."""

    WORKOUTS = "workouts"
    MEALS = "meals"
    DAILY_METRICS = "daily_metrics"

    @abstractmethod
    async def upsert_workout(self, row: dict) -> dict:
        """Upsert a workout row keyed by its ``client_id``."""

    @abstractmethod
    async def delete_workout(self, user_id: str, client_id: str) -> None:
        """Delete a user's workout by ``client_id``."""

    @abstractmethod
    async def upsert_meal(self, row: dict) -> dict:
        """Upsert a meal row keyed by its ``client_id``."""

    @abstractmethod
    async def delete_meal(self, user_id: str, client_id: str) -> None:
        """Delete a user's meal by ``client_id``."""

    @abstractmethod
    async def upsert_daily_metric(self, row: dict) -> dict:
        """Upsert a daily aggregate keyed by ``(user_id, local_day)``."""

    @abstractmethod
    async def fetch_daily_metric(self, user_id: str, day: str) -> Optional[dict]:
        """The aggregate row for one day, or None."""

    @abstractmethod
    async def fetch_daily_metrics(self, user_id: str, start_day: str, end_day: str) -> list[dict]:
        """Aggregate rows for an inclusive day range."""

    @abstractmethod
    async def fetch_workouts(self, user_id: str, since_day: str) -> list[dict]:
        """Workout rows on or after ``since_day``."""

    @abstractmethod
    async def fetch_meals(self, user_id: str, since_day: str) -> list[dict]:
        """Meal rows on or after ``since_day``."""

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# =============================================================================
# Rate Limiter
# =============================================================================

class RateLimiter:
    """
    Sliding-window limits on outbound requests, per minute and per hour.

    Request times come from ``clock``; waits go through ``sleep``. A
    non-positive limit disables that window.
    """

    MINUTE = 60.0
    HOUR = 3600.0

    def __init__(
        self,
        requests_per_minute: int,
        requests_per_hour: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.limits = {self.MINUTE: requests_per_minute, self.HOUR: requests_per_hour}
        self._sent: deque[float] = deque()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    def _recent(self, now: float, span: float) -> list[float]:
        return [t for t in self._sent if t > now - span]

    def _wait_for(self, now: float) -> float:
        """Seconds until one more request fits in every window."""
        while self._sent and self._sent[0] <= now - self.HOUR:
            self._sent.popleft()
        wait = 0.0
        for span, limit in self.limits.items():
            if limit <= 0:
                continue
            recent = self._recent(now, span)
            if len(recent) >= limit:
                wait = max(wait, recent[len(recent) - limit] + span - now)
        return wait

    async def acquire(self) -> None:
        """Record one request, waiting first when a window is full."""
        async with self._lock:
            wait = self._wait_for(self._clock())
            while wait > 0:
                logger.debug(f"Request rate limited; waiting {wait:.2f}s")
                await self._sleep(wait)
                wait = self._wait_for(self._clock())
            self._sent.append(self._clock())

    def remaining(self, span: float) -> int:
        limit = self.limits[span]
        if limit <= 0:
            return 0
        return max(0, limit - len(self._recent(self._clock(), span)))

    @property
    def remaining_minute(self) -> int:
        return self.remaining(self.MINUTE)

    @property
    def remaining_hour(self) -> int:
        return self.remaining(self.HOUR)


# =============================================================================
# REST (PostgREST) adapter
# =============================================================================

_MISSING_COLUMN = re.compile(r"column .*local_day.* does not exist", re.IGNORECASE)


class RestRemoteStore(RemoteStore):
    """PostgREST-style remote store over ``httpx.AsyncClient``."""

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        access_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.access_token = access_token
        self.rate_limiter = RateLimiter(
            self.settings.requests_per_minute,
            self.settings.requests_per_hour,
            sleep=sleep,
        )
        self._transport = transport
        self._sleep = sleep
        self._http_client: Optional[httpx.AsyncClient] = None

    def set_access_token(self, token: Optional[str]) -> None:
        """Swap the bearer token after sign-in or refresh."""
        self.access_token = token

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.remote_url.rstrip("/"),
                timeout=httpx.Timeout(self.settings.remote_timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _headers(self) -> dict[str, str]:
        key = self.settings.remote_api_key
        headers = {"Content-Type": "application/json"}
        if key:
            headers["apikey"] = key
        bearer = self.access_token or key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff delay with up to 25% jitter."""
        delay = self.settings.remote_base_retry_delay * (2 ** attempt)
        jitter = delay * 0.25 * random.random()
        return min(delay + jitter, self.settings.remote_max_retry_delay)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Make an API request with rate limiting and retry on transient failures."""
        client = await self._get_http_client()
        headers = self._headers()
        headers.update(kwargs.pop("headers", {}))

        attempts = max(1, self.settings.remote_max_retries + 1)
        last_exception: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                await self.rate_limiter.acquire()
                response = await client.request(method, path, headers=headers, **kwargs)

                if response.status_code == 429:
                    retry_after = int(response.headers.get("Retry-After", 1))
                    raise RateLimitError(
                        f"Rate limit exceeded. Retry after {retry_after}s",
                        retry_after=retry_after,
                    )

                if response.status_code in (401, 403):
                    raise AuthenticationError(
                        f"Remote rejected credentials ({response.status_code})",
                        status_code=response.status_code,
                    )

                response.raise_for_status()
                return response

            except RateLimitError as e:
                last_exception = e
                if attempt == attempts - 1:
                    break
                wait_time = min(e.retry_after or self._calculate_backoff(attempt),
                                self.settings.remote_max_retry_delay)
                logger.warning(f"Rate limited, waiting {wait_time}s")
                await self._sleep(wait_time)

            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500:
                    last_exception = SyncError(
                        f"Server error {e.response.status_code}",
                        status_code=e.response.status_code,
                    )
                    if attempt == attempts - 1:
                        break
                    wait_time = self._calculate_backoff(attempt)
                    logger.warning(f"Server error {e.response.status_code}, retry in {wait_time:.2f}s")
                    await self._sleep(wait_time)
                else:
                    raise SyncError(
                        f"API error: {e.response.status_code} - {e.response.text}",
                        status_code=e.response.status_code,
                    )

            except httpx.RequestError as e:
                last_exception = NetworkError(str(e))
                if attempt == attempts - 1:
                    break
                wait_time = self._calculate_backoff(attempt)
                logger.warning(f"Network error: {e}, retry in {wait_time:.2f}s")
                await self._sleep(wait_time)

        raise last_exception or SyncError("Max retries exceeded")

    # === Writes ===

    async def _upsert(self, table: str, row: dict, on_conflict: str) -> dict:
        response = await self._request(
            "POST",
            f"/{table}",
            params={"on_conflict": on_conflict},
            json=row,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        data = _json_or_none(response)
        if isinstance(data, list):
            return data[0] if data else dict(row)
        return data if isinstance(data, dict) else dict(row)

    async def _delete(self, table: str, user_id: str, client_id: str) -> None:
        await self._request(
            "DELETE",
            f"/{table}",
            params={"user_id": f"eq.{user_id}", "client_id": f"eq.{client_id}"},
        )

    async def upsert_workout(self, row: dict) -> dict:
        return await self._upsert(self.WORKOUTS, row, "client_id")

    async def delete_workout(self, user_id: str, client_id: str) -> None:
        await self._delete(self.WORKOUTS, user_id, client_id)

    async def upsert_meal(self, row: dict) -> dict:
        return await self._upsert(self.MEALS, row, "client_id")

    async def delete_meal(self, user_id: str, client_id: str) -> None:
        await self._delete(self.MEALS, user_id, client_id)

    async def upsert_daily_metric(self, row: dict) -> dict:
        try:
            return await self._upsert(self.DAILY_METRICS, row, "user_id,local_day")
        except SyncError as e:
            if e.status_code != 400 or not _MISSING_COLUMN.search(str(e)):
                raise
        logger.info("daily_metrics has the legacy schema; retrying with legacy columns")
        return await self._upsert(self.DAILY_METRICS, _legacy_daily_row(row), "user_id,day")

    # === Reads ===

    async def _select(self, table: str, params: list[tuple[str, str]]) -> list[dict]:
        response = await self._request("GET", f"/{table}", params=[("select", "*"), *params])
        data = _json_or_none(response)
        return [r for r in data if isinstance(r, dict)] if isinstance(data, list) else []

    async def fetch_daily_metric(self, user_id: str, day: str) -> Optional[dict]:
        rows = await self._select(
            self.DAILY_METRICS,
            [("user_id", f"eq.{user_id}"), ("local_day", f"eq.{day}"), ("limit", "1")],
        )
        return rows[0] if rows else None

    async def fetch_daily_metrics(self, user_id: str, start_day: str, end_day: str) -> list[dict]:
        return await self._select(
            self.DAILY_METRICS,
            [
                ("user_id", f"eq.{user_id}"),
                ("local_day", f"gte.{start_day}"),
                ("local_day", f"lte.{end_day}"),
                ("order", "local_day.asc"),
            ],
        )

    async def fetch_workouts(self, user_id: str, since_day: str) -> list[dict]:
        return await self._select(
            self.WORKOUTS,
            [
                ("user_id", f"eq.{user_id}"),
                ("local_day", f"gte.{since_day}"),
                ("order", "started_at.desc"),
            ],
        )

    async def fetch_meals(self, user_id: str, since_day: str) -> list[dict]:
        return await self._select(
            self.MEALS,
            [
                ("user_id", f"eq.{user_id}"),
                ("local_day", f"gte.{since_day}"),
                ("order", "eaten_at.desc"),
            ],
        )

    async def health_check(self) -> bool:
        """Check if the remote is reachable."""
        try:
            client = await self._get_http_client()
            response = await client.get("/", headers=self._headers())
            return response.status_code < 500
        except httpx.HTTPError:
            return False


def _json_or_none(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _legacy_daily_row(row: dict) -> dict:
    return {
        "user_id": row.get("user_id"),
        "day": row.get("local_day"),
        "cals_eaten": row.get("calories_eaten"),
        "cals_burned": row.get("calories_burned"),
        "net_cals": row.get("net_calories"),
        "updated_at": row.get("updated_at"),
    }


# =============================================================================
# In-memory adapter
# =============================================================================

class InMemoryRemoteStore(RemoteStore):
    """
    Dict-backed remote with upsert-by-key semantics.

    Set ``fail_with`` to an exception instance to make every call raise it.
    """

    def __init__(self):
        self.workouts: dict[str, dict] = {}
        self.meals: dict[str, dict] = {}
        self.daily_metrics: dict[tuple[str, str], dict] = {}
        self.fail_with: Optional[Exception] = None
        self.calls: list[str] = []

    def _track(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    @staticmethod
    def _merge(table: dict, key: Any, row: dict) -> dict:
        merged = {**table.get(key, {}), **row}
        table[key] = merged
        return dict(merged)

    async def upsert_workout(self, row: dict) -> dict:
        self._track("upsert_workout")
        return self._merge(self.workouts, row["client_id"], row)

    async def delete_workout(self, user_id: str, client_id: str) -> None:
        self._track("delete_workout")
        if self.workouts.get(client_id, {}).get("user_id") == user_id:
            del self.workouts[client_id]

    async def upsert_meal(self, row: dict) -> dict:
        self._track("upsert_meal")
        return self._merge(self.meals, row["client_id"], row)

    async def delete_meal(self, user_id: str, client_id: str) -> None:
        self._track("delete_meal")
        if self.meals.get(client_id, {}).get("user_id") == user_id:
            del self.meals[client_id]

    async def upsert_daily_metric(self, row: dict) -> dict:
        self._track("upsert_daily_metric")
        return self._merge(self.daily_metrics, (row["user_id"], row["local_day"]), row)

    async def fetch_daily_metric(self, user_id: str, day: str) -> Optional[dict]:
        self._track("fetch_daily_metric")
        row = self.daily_metrics.get((user_id, day))
        return dict(row) if row else None

    async def fetch_daily_metrics(self, user_id: str, start_day: str, end_day: str) -> list[dict]:
        self._track("fetch_daily_metrics")
        return [
            dict(row) for (uid, day), row in sorted(self.daily_metrics.items())
            if uid == user_id and start_day <= day <= end_day
        ]

    async def fetch_workouts(self, user_id: str, since_day: str) -> list[dict]:
        self._track("fetch_workouts")
        return [
            dict(row) for row in self.workouts.values()
            if row.get("user_id") == user_id and str(row.get("local_day") or "") >= since_day
        ]

    async def fetch_meals(self, user_id: str, since_day: str) -> list[dict]:
        self._track("fetch_meals")
        return [
            dict(row) for row in self.meals.values()
            if row.get("user_id") == user_id and str(row.get("local_day") or "") >= since_day
        ]

    async def health_check(self) -> bool:
        return self.fail_with is None
