"""
Custom exceptions for smart sync.

Every failure inside a sync cycle is expressed as one of these so the
orchestrator can report it as a cycle-level result instead of raising.
"""

from __future__ import annotations


class SmartSyncError(Exception):
    """Base exception for all smart sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransportError(SmartSyncError):
    """Raised when the remote store cannot be reached or answers with a fault."""

    def __init__(
        self,
        message: str,
        collection: str | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {}
        if collection:
            details["collection"] = collection
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.collection = collection
        self.cause = cause


class AuthenticationError(TransportError):
    """Raised when authentication to the remote store fails."""

    def __init__(self, endpoint: str, reason: str | None = None):
        super().__init__(f"Authentication failed for {endpoint}")
        self.details["endpoint"] = endpoint
        if reason:
            self.details["reason"] = reason
        self.endpoint = endpoint
        self.reason = reason


class QueryUnsupportedError(SmartSyncError):
    """Raised when the remote store refuses to run a filtered query.

    Typical causes are a missing index or an operator the store does
    not support. The fetcher recovers by running an unfiltered query.
    """

    def __init__(self, collection: str, reason: str | None = None):
        details = {"collection": collection}
        if reason:
            details["reason"] = reason
        super().__init__(f"Filtered query unsupported for {collection}", details)
        self.collection = collection
        self.reason = reason


class PersistenceError(SmartSyncError):
    """Raised when a local cache read or write fails."""

    def __init__(self, operation: str, key: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if key:
            details["key"] = key
        if cause:
            details["cause"] = str(cause)
        message = f"Local cache error during {operation}"
        if key:
            message += f": {key}"
        super().__init__(message, details)
        self.operation = operation
        self.key = key
        self.cause = cause


class SyncTimeoutError(SmartSyncError):
    """Raised when a suspending step exceeds its bound.

    Note: Named SyncTimeoutError to avoid shadowing the builtin TimeoutError.
    """

    def __init__(self, collection: str, step: str, timeout: float):
        super().__init__(
            f"{step} for {collection} timed out after {timeout:.3f}s",
            {"collection": collection, "step": step, "timeout": timeout},
        )
        self.collection = collection
        self.step = step
        self.timeout = timeout


class SyncInProgressError(SmartSyncError):
    """Raised when a cycle is requested for a collection that is already syncing."""

    def __init__(self, collection: str):
        super().__init__(f"Sync already in progress: {collection}", {"collection": collection})
        self.collection = collection


class SyncCancelledError(SmartSyncError):
    """Recorded on a cycle that was cancelled before it reached persistence."""

    def __init__(self, collection: str):
        super().__init__(f"Sync cancelled: {collection}", {"collection": collection})
        self.collection = collection


class RecordValidationError(SmartSyncError):
    """Raised when a mapping cannot be turned into a record."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class ConfigurationError(SmartSyncError):
    """Raised when sync configuration is incomplete or invalid."""
