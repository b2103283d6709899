"""
Operation Queue.

Durable, append-only list of pending mutation intents stored as JSON under
``pendingOps``. Each item moves through
``pending -> in-flight -> applied (removed) | failed (requeued with backoff)``.

Every mutation re-reads the persisted list and changes only the item it is
about, so operations enqueued while a flush is awaiting the network are
never lost.
"""

import logging
import time
from typing import Callable, Optional

from .models import Keys, OperationType, PendingOperation
from .storage import Storage, read_json, write_json

logger = logging.getLogger(__name__)


class OperationQueue:
    """Persisted FIFO of ``PendingOperation`` items with per-item backoff."""

    def __init__(
        self,
        storage: Storage,
        device_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        backoff_base_ms: int = 1000,
        backoff_cap_ms: int = 30000,
        max_retry_count: Optional[int] = None,
        lease_ms: int = 8000,
    ):
        self.storage = storage
        self.device_id = device_id
        self.clock = clock
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self.max_retry_count = max_retry_count
        self.lease_ms = lease_ms

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def backoff_ms(self, retry_count: int) -> int:
        """Delay before the next attempt after ``retry_count`` failures."""
        return min(self.backoff_cap_ms, self.backoff_base_ms * (2 ** retry_count))

    # === Persistence ===

    def _read_raw(self, key: str = Keys.PENDING_OPS) -> list[dict]:
        value = read_json(self.storage, key, [])
        return [d for d in value if isinstance(d, dict)] if isinstance(value, list) else []

    def _write_raw(self, items: list[dict], key: str = Keys.PENDING_OPS) -> None:
        write_json(self.storage, key, items)

    def all(self) -> list[PendingOperation]:
        """Every queued operation in enqueue order. Malformed entries are skipped."""
        ops = []
        for d in self._read_raw():
            try:
                ops.append(PendingOperation.from_dict(d))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed queued operation: {e}")
        return ops

    def __len__(self) -> int:
        return len(self._read_raw())

    def get(self, op_id: str) -> Optional[PendingOperation]:
        return next((op for op in self.all() if op.id == op_id), None)

    # === Mutations ===

    def enqueue(self, op_type: OperationType, payload: dict) -> PendingOperation:
        """Append a new operation with ``retry_count=0``."""
        op = PendingOperation(
            type=OperationType(op_type).value,
            payload=payload,
            ts=self.now_ms(),
            device_id=self.device_id,
        )
        items = self._read_raw()
        items.append(op.to_dict())
        self._write_raw(items)
        logger.debug(f"Enqueued {op.type} operation {op.id}")
        return op

    def remove(self, op_id: str) -> None:
        items = self._read_raw()
        self._write_raw([d for d in items if d.get("id") != op_id])

    def replace(self, op: PendingOperation) -> None:
        """Persist changes to an existing item, keeping its position."""
        items = self._read_raw()
        for i, d in enumerate(items):
            if d.get("id") == op.id:
                items[i] = op.to_dict()
                self._write_raw(items)
                return

    def mark_failed(self, op: PendingOperation, error: str) -> bool:
        """
        Record a failed attempt and schedule the retry.

        Returns:
            True if the item hit ``max_retry_count`` and was dead-lettered
        """
        op.retry_count += 1
        op.next_after = self.now_ms() + self.backoff_ms(op.retry_count)
        op.last_error = error[:500]

        if self.max_retry_count is not None and op.retry_count >= self.max_retry_count:
            self.remove(op.id)
            dead = self._read_raw(Keys.PENDING_OPS_DEAD)
            dead.append(op.to_dict())
            self._write_raw(dead, Keys.PENDING_OPS_DEAD)
            logger.error(f"Operation {op.id} ({op.type}) dead-lettered after {op.retry_count} attempts")
            return True

        self.replace(op)
        return False

    def dead_letters(self) -> list[PendingOperation]:
        return [PendingOperation.from_dict(d) for d in self._read_raw(Keys.PENDING_OPS_DEAD)]

    # === Advisory lease ===

    def acquire_lease(self, owner: str) -> bool:
        """
        Take the queue lease unless another owner holds a live one.

        The lease is advisory: it narrows, but does not close, the window in
        which two processes sharing the storage flush the same items.
        """
        lease = read_json(self.storage, Keys.PENDING_OPS_LEASE, {})
        now = self.now_ms()
        if isinstance(lease, dict) and lease.get("owner") != owner and int(lease.get("until") or 0) > now:
            return False
        write_json(self.storage, Keys.PENDING_OPS_LEASE, {"owner": owner, "until": now + self.lease_ms})
        return True

    def release_lease(self, owner: str) -> None:
        lease = read_json(self.storage, Keys.PENDING_OPS_LEASE, {})
        if not isinstance(lease, dict) or lease.get("owner") == owner:
            self.storage.remove(Keys.PENDING_OPS_LEASE)

    def stats(self) -> dict[str, int]:
        """Queue statistics for status displays."""
        ops = self.all()
        now = self.now_ms()
        return {
            "pending": len(ops),
            "due": sum(1 for op in ops if op.is_due(now)),
            "backing_off": sum(1 for op in ops if not op.is_due(now)),
            "dead": len(self._read_raw(Keys.PENDING_OPS_DEAD)),
        }
