"""
Remote entry store backends.

Every backend implements the same ``EntryStore`` interface, so store
handles can switch between them without changes.

Backend Selection:

    # In-process, for tests and local development
    from datastore_service.backends import MemoryEntryStore

    # Local file or in-memory SQLite
    from datastore_service.backends.sqlite import SQLiteEntryStore, SQLiteConfig

    # Azure Cosmos DB
    from datastore_service.backends.cosmos import CosmosEntryStore, CosmosConfig
"""

from .base import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_SCOPE,
    MAX_PAGE_SIZE,
    Entry,
    EntryStore,
    ListFilter,
    ListResult,
    StoreKind,
    is_numeric,
)
from .memory import MemoryEntryStore
from .sqlite import SQLiteConfig, SQLiteEntryStore

__all__ = [
    # Core abstractions
    "EntryStore",
    "Entry",
    "StoreKind",
    "ListFilter",
    "ListResult",
    "is_numeric",
    # Constants
    "DEFAULT_SCOPE",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    # Implementations
    "MemoryEntryStore",
    "SQLiteEntryStore",
    "SQLiteConfig",
]
