"""
Queue Flusher.

Drains the operation queue against the remote store whenever connectivity
allows. Items are applied one at a time in enqueue order; a failing item is
rescheduled with capped exponential backoff and never blocks the items
behind it.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

from .connectivity import ConnectivityMonitor, Signal
from .models import AuthUser, DailyAggregate, FlushResult, OperationType
from .operation_queue import OperationQueue
from .remote import AuthenticationError, RemoteStore, SyncError

logger = logging.getLogger(__name__)

DayTotals = Callable[[str, str], DailyAggregate]


class UnknownOperationError(SyncError):
    """Queued operation type has no remote handler."""
    pass


# =============================================================================
# Dispatch
# =============================================================================

def _stamp(row: Optional[dict], user_id: Optional[str]) -> Optional[dict]:
    if row is None or row.get("user_id") or not user_id:
        return row
    return {**row, "user_id": user_id}


def _require_user(row: Optional[dict], what: str) -> dict:
    if not isinstance(row, dict):
        raise SyncError(f"{what} payload is missing")
    if not row.get("user_id"):
        raise AuthenticationError(f"{what} has no owning user")
    return row


async def apply_operation(
    remote: RemoteStore,
    op_type: str,
    payload: dict,
    user_id: Optional[str] = None,
    day_totals: Optional[DayTotals] = None,
) -> None:
    """
    Apply one mutation to the remote store.

    Rows written while anonymous carry no ``user_id``; they are attributed to
    ``user_id`` here. Every call is an upsert or delete by key, so applying
    the same operation twice leaves the remote unchanged.

    Workout and meal operations name the ``day`` they touched. When
    ``day_totals`` is given, that day's totals are read from it at apply
    time and upserted after the record; queued payloads never carry totals.

    Raises:
        AuthenticationError: No user to attribute the rows to
        UnknownOperationError: ``op_type`` is not a known operation
    """
    record = _stamp(payload.get("record"), user_id)

    if op_type == OperationType.WORKOUT_UPSERT.value:
        owner = _require_user(record, "workout")["user_id"]
        await remote.upsert_workout(record)
    elif op_type == OperationType.MEAL_UPSERT.value:
        owner = _require_user(record, "meal")["user_id"]
        await remote.upsert_meal(record)
    elif op_type == OperationType.DAILY_METRIC_UPSERT.value:
        await remote.upsert_daily_metric(_require_user(record, "daily metric"))
        return
    elif op_type in (OperationType.WORKOUT_DELETE.value, OperationType.MEAL_DELETE.value):
        owner = payload.get("user_id") or user_id
        if not owner:
            raise AuthenticationError(f"{op_type} has no owning user")
        client_id = str(payload.get("client_id") or "")
        if not client_id:
            raise SyncError(f"{op_type} payload has no client_id")
        if op_type == OperationType.WORKOUT_DELETE.value:
            await remote.delete_workout(owner, client_id)
        else:
            await remote.delete_meal(owner, client_id)
    else:
        raise UnknownOperationError(f"Unknown operation type: {op_type}")

    day = payload.get("day")
    if day and day_totals is not None:
        totals = day_totals(owner, day)
        await remote.upsert_daily_metric(totals.to_remote(owner, day))


# =============================================================================
# Flusher
# =============================================================================

class QueueFlusher:
    """Delivers queued operations with per-item backoff and bounded passes."""

    def __init__(
        self,
        queue: OperationQueue,
        remote: RemoteStore,
        connectivity: ConnectivityMonitor,
        user_provider: Callable[[], Optional[AuthUser]] = lambda: None,
        day_totals: Optional[DayTotals] = None,
        retry_delay: float = 1.2,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.queue = queue
        self.remote = remote
        self.connectivity = connectivity
        self.user_provider = user_provider
        self.day_totals = day_totals
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._owner = f"flusher-{uuid.uuid4()}"
        self._flushing = False

    async def flush_pending(self, max_tries: int = 2) -> FlushResult:
        """
        Drain the queue.

        Runs one pass over every due item; when items remain and
        ``max_tries > 1``, waits ``retry_delay`` seconds and runs another
        pass, up to ``max_tries`` passes in total.

        Args:
            max_tries: Maximum number of passes

        Returns:
            FlushResult with counters accumulated across passes
        """
        if not self.connectivity.is_online:
            return FlushResult(offline=True, remaining=len(self.queue))

        if self._flushing or not self.queue.acquire_lease(self._owner):
            logger.debug("Flush already in progress; skipping")
            return FlushResult(locked=True, remaining=len(self.queue))

        self._flushing = True
        result = FlushResult()
        try:
            tries = max(1, max_tries)
            while True:
                await self._run_pass(result)
                if tries <= 1 or not len(self.queue) or not self.connectivity.is_online:
                    break
                tries -= 1
                await self._sleep(self.retry_delay)
        finally:
            self._flushing = False
            self.queue.release_lease(self._owner)

        result.remaining = len(self.queue)
        if result.flushed or result.failed or result.dropped:
            logger.info(
                f"Flush finished: {result.flushed} flushed, {result.failed} failed, "
                f"{result.dropped} dropped, {result.remaining} remaining"
            )
        return result

    async def _run_pass(self, result: FlushResult) -> None:
        now = self.queue.now_ms()
        user = self.user_provider()
        user_id = user.id if user else None

        for op in self.queue.all():
            if not self.connectivity.is_online:
                break
            if not op.is_due(now):
                result.skipped += 1
                continue

            self.queue.acquire_lease(self._owner)
            try:
                await apply_operation(self.remote, op.type, op.payload, user_id, self.day_totals)
            except UnknownOperationError as e:
                logger.warning(f"Dropping operation {op.id}: {e}")
                self.queue.remove(op.id)
                result.dropped += 1
                continue
            except Exception as e:
                self.queue.mark_failed(op, str(e))
                result.failed += 1
                logger.warning(
                    f"Operation {op.id} ({op.type}) failed, attempt {op.retry_count}: {e}"
                )
                continue

            self.queue.remove(op.id)
            result.flushed += 1
            logger.debug(f"Applied {op.type} operation {op.id}")

    async def attach_sync_listeners(self) -> Callable[[], None]:
        """
        Flush on connectivity and visibility regained, plus once right now.

        Returns:
            Callable that detaches the listeners
        """
        async def on_online() -> None:
            await self.flush_pending(max_tries=2)

        async def on_visible() -> None:
            await self.flush_pending(max_tries=1)

        removers = [
            self.connectivity.add_listener(Signal.ONLINE, on_online),
            self.connectivity.add_listener(Signal.VISIBLE, on_visible),
            self.connectivity.add_listener(Signal.FOCUS, on_visible),
        ]

        try:
            await self.flush_pending(max_tries=1)
        except Exception as e:
            logger.error(f"Initial flush failed: {e}")

        def detach() -> None:
            for remove in removers:
                remove()

        return detach
