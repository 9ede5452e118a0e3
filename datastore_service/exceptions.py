"""
Custom exceptions for the datastore service.

All entry stores and store handles raise these exceptions
for consistent error handling across backends.
"""

from typing import Any


class DataStoreError(Exception):
    """Base exception for all datastore errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class EntryNotFoundError(DataStoreError):
    """Raised when an entry is required but absent.

    Store handles surface absence as ``None``; this is for callers
    that need a hard failure instead.
    """

    def __init__(self, key: str, store_name: str | None = None):
        details = {"key": key}
        if store_name:
            details["store_name"] = store_name
        super().__init__(f"Entry not found: {key}", details)
        self.key = key
        self.store_name = store_name


class VersionConflictError(DataStoreError):
    """Raised by an entry store when a conditional write loses the race.

    ``expected_version`` is the version the writer read; ``actual_version``
    is what the store holds now, when the store can tell.
    """

    def __init__(self, key: str, expected_version: int, actual_version: int | None = None):
        details: dict[str, Any] = {"key": key, "expected_version": expected_version}
        if actual_version is not None:
            details["actual_version"] = actual_version
        super().__init__(
            f"Version conflict on {key}: expected {expected_version}, found {actual_version}",
            details,
        )
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version


class ConcurrencyExhaustedError(DataStoreError):
    """Raised when UpdateAsync keeps conflicting after all retries."""

    def __init__(self, key: str, attempts: int):
        super().__init__(
            f"Update of {key} still conflicting after {attempts} attempts",
            {"key": key, "attempts": attempts},
        )
        self.key = key
        self.attempts = attempts


class InvalidValueTypeError(DataStoreError, TypeError):
    """Raised when a numeric value is required but something else was given."""

    def __init__(self, key: str, value: Any, reason: str = "value must be numeric"):
        super().__init__(
            f"Invalid value for {key}: {reason} (got {type(value).__name__})",
            {"key": key, "value_type": type(value).__name__, "reason": reason},
        )
        self.key = key
        self.value = value
        self.reason = reason


class RemoteUnavailableError(DataStoreError):
    """Raised when the remote entry store cannot be reached or fails.

    Note: wraps transport errors from every backend (aiosqlite, Cosmos DB).
    """

    def __init__(self, operation: str, cause: Exception | None = None):
        details = {"operation": operation}
        if cause:
            details["cause"] = str(cause)
        message = f"Remote entry store unavailable during {operation}"
        if cause:
            message += f": {cause}"
        super().__init__(message, details)
        self.operation = operation
        self.cause = cause


class VersionHistoryNotImplementedError(DataStoreError, NotImplementedError):
    """Raised by the version-history API family, which keeps no history."""

    def __init__(self, method: str):
        super().__init__(
            f"{method} is not implemented: version history is not retained",
            {"method": method},
        )
        self.method = method


class InvalidStateError(DataStoreError):
    """Raised on API misuse, e.g. advancing a finished page."""


class ValidationError(DataStoreError):
    """Raised when an argument fails validation."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class ConfigurationError(DataStoreError):
    """Raised when service configuration is invalid."""

    def __init__(self, setting: str, reason: str):
        super().__init__(
            f"Invalid configuration for {setting}: {reason}",
            {"setting": setting, "reason": reason},
        )
        self.setting = setting
        self.reason = reason


class AuthenticationError(DataStoreError):
    """Raised when authentication to the remote store fails."""

    def __init__(self, endpoint: str, reason: str | None = None):
        details = {"endpoint": endpoint}
        if reason:
            details["reason"] = reason
        super().__init__(f"Authentication failed for {endpoint}", details)
        self.endpoint = endpoint
        self.reason = reason
