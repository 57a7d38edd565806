"""
Smart Sync

Local-first synchronization cache for named record collections backed
by a hosted document database.

Provides:
- Incremental fetch of records updated since the last successful sync
- Timestamp-based merge that never overwrites unsynced local edits
- Atomic local persistence (JSON files or in-memory)
- Per-collection sync cycles with timeouts, cancellation and rollback

Usage:

    >>> from smart_sync import SyncConfig, create_orchestrator
    >>> orchestrator = create_orchestrator(SyncConfig.from_environment())
    >>> result = await orchestrator.sync("officers")
    >>> if not result.success:
    ...     records = await orchestrator.read("officers")  # last known good
"""

from .config import CosmosAuthMethod, SyncConfig
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    PersistenceError,
    QueryUnsupportedError,
    RecordValidationError,
    SmartSyncError,
    SyncCancelledError,
    SyncInProgressError,
    SyncTimeoutError,
    TransportError,
)
from .local import CacheStore, FileCacheStore, MemoryCacheStore
from .merge import MergeResult, merge, merge_records
from .metadata import SYNC_METADATA_KEY, TimestampStore
from .orchestrator import CycleResult, SyncOrchestrator, SyncPhase, create_orchestrator
from .records import Record, format_instant, parse_instant
from .remote import FetchResult, QueryErr, QueryOk, RemoteFetcher, RemoteSource, filter_since

__version__ = "0.1.0"

__all__ = [
    # Records and merge
    "Record",
    "parse_instant",
    "format_instant",
    "merge",
    "merge_records",
    "MergeResult",
    # Sync
    "SyncOrchestrator",
    "SyncPhase",
    "CycleResult",
    "create_orchestrator",
    "TimestampStore",
    "SYNC_METADATA_KEY",
    # Remote
    "RemoteSource",
    "RemoteFetcher",
    "FetchResult",
    "QueryOk",
    "QueryErr",
    "filter_since",
    # Local
    "CacheStore",
    "FileCacheStore",
    "MemoryCacheStore",
    # Config
    "SyncConfig",
    "CosmosAuthMethod",
    # Exceptions
    "SmartSyncError",
    "TransportError",
    "AuthenticationError",
    "QueryUnsupportedError",
    "PersistenceError",
    "SyncTimeoutError",
    "SyncInProgressError",
    "SyncCancelledError",
    "RecordValidationError",
    "ConfigurationError",
]
