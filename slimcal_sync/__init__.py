"""
SlimCal Sync

Offline-first reconciliation between a device-local cache of meals, workouts
and daily calorie totals and the shared cloud store.
"""

from .engine import SyncEngine, sync_engine
from .config import SyncSettings, get_settings
from .storage import Storage, MemoryStorage, SQLiteStorage
from .connectivity import ConnectivityMonitor, Signal
from .events import EventDomain, EventEmitter, SyncEvent
from .remote import (
    # Remote stores
    RemoteStore,
    RestRemoteStore,
    InMemoryRemoteStore,
    RateLimiter,

    # Exceptions
    SyncError,
    AuthenticationError,
    RateLimitError,
    NetworkError,
)
from .models import (
    AuthUser,
    DailyAggregate,
    OperationType,
    PendingOperation,
    WriteResult,
    FlushResult,
    HydrationResult,
)
from .hydrator import merge_calorie_history
from .identity import ensure_scoped_from_legacy, get_or_create_client_id, scoped_key

__version__ = "0.1.0"
__all__ = [
    # Engine
    "SyncEngine",
    "sync_engine",

    # Configuration
    "SyncSettings",
    "get_settings",

    # Local state
    "Storage",
    "MemoryStorage",
    "SQLiteStorage",
    "get_or_create_client_id",
    "scoped_key",
    "ensure_scoped_from_legacy",

    # Signals and events
    "ConnectivityMonitor",
    "Signal",
    "EventDomain",
    "EventEmitter",
    "SyncEvent",

    # Remote stores
    "RemoteStore",
    "RestRemoteStore",
    "InMemoryRemoteStore",
    "RateLimiter",

    # Data models
    "AuthUser",
    "DailyAggregate",
    "OperationType",
    "PendingOperation",
    "WriteResult",
    "FlushResult",
    "HydrationResult",
    "merge_calorie_history",

    # Exceptions
    "SyncError",
    "AuthenticationError",
    "RateLimitError",
    "NetworkError",
]
