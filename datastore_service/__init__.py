"""
DataStore Service

Versioned, ordered key-value data stores emulated on top of a plain remote
entry store that offers only fetch / conditional upsert / delete / list.

Provides:
- Optimistic concurrency (version compare-and-swap) for UpdateAsync/IncrementAsync
- Ordered data stores with sorted range queries
- Cursor-based pagination
- Polling-based OnUpdate notifications
- Pluggable backends (in-memory, SQLite, Cosmos DB)

Usage:

    >>> from datastore_service import DataStoreService, DataStoreConfig
    >>> config = DataStoreConfig(backend="sqlite", sqlite_path="game.db")
    >>> async with await DataStoreService.create(config) as service:
    ...     inventory = service.get_data_store("Inventory", scope="player_42")
    ...     await inventory.update("items", lambda items: (items or []) + ["sword"])
    ...
    ...     leaderboard = service.get_ordered_data_store("Wins")
    ...     await leaderboard.increment("player_42")
    ...     pages = await leaderboard.get_sorted(ascending=False, page_size=10)
    ...     for entry in pages.get_current_page():
    ...         print(entry.key, entry.value)

Backend Selection:

    # In-memory for tests and local development
    DataStoreConfig(backend="memory")

    # SQLite for embedded or single-host deployments
    DataStoreConfig(backend="sqlite", sqlite_path="datastore.db")

    # Cosmos DB for shared cloud storage
    DataStoreConfig(backend="cosmos", cosmos_endpoint="https://...")
"""

from .backends import (
    Entry,
    EntryStore,
    ListFilter,
    ListResult,
    MemoryEntryStore,
    SQLiteConfig,
    SQLiteEntryStore,
    StoreKind,
)
from .client import DataStoreInfo, DataStoreService, RequestType
from .config import CosmosAuthMethod, DataStoreConfig
from .datastore import (
    DataStore,
    DataStoreKey,
    DataStoreKeyInfo,
    OrderedDataStore,
    OrderedEntry,
    SetOptions,
)

# Exceptions
from .exceptions import (
    AuthenticationError,
    ConcurrencyExhaustedError,
    ConfigurationError,
    DataStoreError,
    EntryNotFoundError,
    InvalidStateError,
    InvalidValueTypeError,
    RemoteUnavailableError,
    ValidationError,
    VersionConflictError,
    VersionHistoryNotImplementedError,
)
from .logging_utils import configure_structured_logging
from .pagination import DataStorePages
from .subscriptions import Subscription, SubscriptionPoller

# Cosmos DB needs the azure extras at import time
try:
    from .backends.cosmos import CosmosConfig, CosmosEntryStore  # noqa: F401

    _has_cosmos = True
except ImportError:
    _has_cosmos = False


__all__ = [
    # Client
    "DataStoreService",
    "DataStoreConfig",
    "CosmosAuthMethod",
    "RequestType",
    "DataStoreInfo",
    # Store handles
    "DataStore",
    "OrderedDataStore",
    "SetOptions",
    "DataStoreKey",
    "DataStoreKeyInfo",
    "OrderedEntry",
    "DataStorePages",
    "Subscription",
    "SubscriptionPoller",
    # Backends
    "EntryStore",
    "Entry",
    "StoreKind",
    "ListFilter",
    "ListResult",
    "MemoryEntryStore",
    "SQLiteEntryStore",
    "SQLiteConfig",
    # Logging
    "configure_structured_logging",
    # Exceptions
    "DataStoreError",
    "EntryNotFoundError",
    "VersionConflictError",
    "ConcurrencyExhaustedError",
    "InvalidValueTypeError",
    "RemoteUnavailableError",
    "VersionHistoryNotImplementedError",
    "InvalidStateError",
    "ValidationError",
    "ConfigurationError",
    "AuthenticationError",
]

if _has_cosmos:
    __all__.extend(["CosmosEntryStore", "CosmosConfig"])

__version__ = "0.1.0"
