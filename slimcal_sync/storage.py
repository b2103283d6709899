"""
Key-value storage port for the local cache and operation queue.

Every piece of client state (history caches, the pending operation queue,
the device identity, the migration sentinel) lives behind the small
``Storage`` interface so the engine can run against SQLite on a device and
against a dict in tests.
"""

import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Port
# =============================================================================

class Storage(ABC):
    """Persistent string key-value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the raw value for ``key`` or None when absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete ``key``. Missing keys are ignored."""

    @abstractmethod
    def keys(self) -> list[str]:
        """List every stored key."""

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def keys_with_prefix(self, prefix: str) -> list[str]:
        return [k for k in self.keys() if k.startswith(prefix)]


def read_json(storage: Storage, key: str, fallback: Any = None) -> Any:
    """
    Read and decode a JSON document.

    Corrupted or missing values never raise; the fallback is returned instead.
    """
    raw = storage.get(key)
    if raw is None or raw == "":
        return fallback
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Discarding unreadable JSON under {key!r}: {e}")
        return fallback


def write_json(storage: Storage, key: str, value: Any) -> None:
    """Encode ``value`` as JSON and store it."""
    storage.set(key, json.dumps(value, default=str))


# =============================================================================
# Adapters
# =============================================================================

class MemoryStorage(Storage):
    """Dict-backed storage for tests and throwaway sessions."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def __len__(self) -> int:
        return len(self._data)


class SQLiteStorage(Storage):
    """SQLite-based key-value store that survives process restarts."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS local_store (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with cleanup and retry for SQLITE_BUSY."""
        conn = None
        for attempt in range(5):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
                conn.row_factory = sqlite3.Row
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < 4:
                    time.sleep(0.1 * (2 ** attempt))
                else:
                    raise
        try:
            yield conn
        finally:
            if conn:
                conn.close()

    def get(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM local_store WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        with self._lock, self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO local_store (key, value, updated_at)
                VALUES (?, ?, ?)
                """,
                (key, value, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

    def remove(self, key: str) -> None:
        with self._lock, self._get_connection() as conn:
            conn.execute("DELETE FROM local_store WHERE key = ?", (key,))
            conn.commit()

    def keys(self) -> list[str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key FROM local_store ORDER BY key").fetchall()
        return [row["key"] for row in rows]

    def keys_with_prefix(self, prefix: str) -> list[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT key FROM local_store WHERE key LIKE ? ESCAPE '\\'",
                (escaped + "%",),
            ).fetchall()
        return [row["key"] for row in rows]

