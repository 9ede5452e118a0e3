"""
DataStoreService client.

Entry point for the library: holds configuration, builds the entry store
backend, hands out store handles and owns the subscription poller.

Usage:

    >>> async with await DataStoreService.create() as service:
    ...     coins = service.get_data_store("PlayerCoins")
    ...     await coins.increment("player_42", 10)
    ...     board = service.get_ordered_data_store("Leaderboard")
    ...     await board.set("player_42", 1200)
    ...     top = await board.get_sorted(ascending=False, page_size=10)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, cast

from .backends.base import DEFAULT_SCOPE, EntryStore, ListResult, StoreKind, clamp_page_size
from .backends.memory import MemoryEntryStore
from .backends.sqlite import SQLiteConfig, SQLiteEntryStore
from .config import DataStoreConfig
from .datastore import DataStore, OrderedDataStore
from .exceptions import ValidationError
from .logging_utils import get_store_logger
from .pagination import DataStorePages
from .subscriptions import SubscriptionPoller

logger = get_store_logger("client")

MAX_NAME_LENGTH = 50


class RequestType(Enum):
    """Request budget categories of the upstream API."""

    GET_ASYNC = "GetAsync"
    SET_INCREMENT_ASYNC = "SetIncrementAsync"
    UPDATE_ASYNC = "UpdateAsync"
    GET_SORTED_ASYNC = "GetSortedAsync"
    SET_INCREMENT_SORTED_ASYNC = "SetIncrementSortedAsync"
    ON_UPDATE = "OnUpdate"
    LIST_ASYNC = "ListAsync"
    REMOVE_ASYNC = "RemoveAsync"


@dataclass(frozen=True)
class DataStoreInfo:
    """One item of a ``list_data_stores`` page."""

    name: str


def _validate_name(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(field, "must be a non-empty string", repr(value))
    if len(value) > MAX_NAME_LENGTH:
        raise ValidationError(field, f"must be at most {MAX_NAME_LENGTH} characters", value)
    return value


def build_entry_store(config: DataStoreConfig) -> EntryStore:
    """Construct (but do not initialize) the backend named by ``config.backend``."""
    if config.backend == "memory":
        return MemoryEntryStore()

    if config.backend == "sqlite":
        return SQLiteEntryStore(
            SQLiteConfig(db_path=config.sqlite_path, table_name=config.table_name)
        )

    if config.backend == "cosmos":
        from .backends.cosmos import CosmosConfig, CosmosEntryStore

        return CosmosEntryStore(
            CosmosConfig(
                endpoint=config.cosmos_endpoint or "",
                database_name=config.cosmos_database,
                container_name=config.table_name,
                auth_method=config.cosmos_auth_method,
                key=config.cosmos_key,
            )
        )

    raise ValidationError("backend", f"unknown backend {config.backend!r}")


class DataStoreService:
    """Factory for data store handles bound to one entry store.

    Handles are cached per (name, scope, kind), so repeated lookups return
    the same object. The service itself holds no entry data.
    """

    def __init__(self, entry_store: EntryStore, config: DataStoreConfig | None = None):
        """
        Args:
            entry_store: Backend every handle talks to
            config: Service configuration (defaults if omitted)
        """
        self.config = (config or DataStoreConfig()).validate()
        self.entry_store = entry_store
        self.poller = SubscriptionPoller(self.config.on_update_poll_interval)
        self._stores: dict[tuple[str, str, StoreKind], DataStore] = {}
        self._owns_entry_store = False

    @classmethod
    async def create(
        cls,
        config: DataStoreConfig | None = None,
        entry_store: EntryStore | None = None,
    ) -> DataStoreService:
        """Create a service, building and initializing the backend.

        Args:
            config: Service configuration (defaults to environment variables)
            entry_store: Use this backend instead of building one from config;
                the caller keeps ownership and must close it
        """
        if config is None:
            config = DataStoreConfig.from_env()

        owns = entry_store is None
        if entry_store is None:
            entry_store = build_entry_store(config.validate())
        await entry_store.initialize()

        service = cls(entry_store, config)
        service._owns_entry_store = owns
        logger.info(
            "DataStoreService ready (backend=%s, table=%s)", config.backend, config.table_name
        )
        return service

    async def close(self) -> None:
        """Stop polling and close the backend if this service built it."""
        await self.poller.close()
        if self._owns_entry_store:
            await self.entry_store.close()

    async def __aenter__(self) -> DataStoreService:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Store handles
    # =========================================================================

    def _get_store(self, cls: type[DataStore], name: str, scope: str) -> DataStore:
        _validate_name("name", name)
        _validate_name("scope", scope)
        cache_key = (name, scope, cls.store_kind)
        store = self._stores.get(cache_key)
        if store is None:
            store = cls(
                name,
                self.entry_store,
                config=self.config,
                scope=scope,
                poller=self.poller,
            )
            self._stores[cache_key] = store
        return store

    def get_data_store(self, name: str, scope: str = DEFAULT_SCOPE) -> DataStore:
        """Handle for a standard data store."""
        return self._get_store(DataStore, name, scope)

    def get_global_data_store(self) -> DataStore:
        """Handle for the configured global data store."""
        return self._get_store(DataStore, self.config.global_data_store_name, DEFAULT_SCOPE)

    def get_ordered_data_store(self, name: str, scope: str = DEFAULT_SCOPE) -> OrderedDataStore:
        """Handle for an ordered (numeric, sortable) data store."""
        return cast(OrderedDataStore, self._get_store(OrderedDataStore, name, scope))

    async def list_data_stores(
        self,
        prefix: str | None = None,
        page_size: int | None = None,
        cursor: str | None = None,
    ) -> DataStorePages[DataStoreInfo]:
        """List distinct store names in ascending order.

        Nothing is fetched until the first ``advance_to_next_page``.
        """

        async def fetch_page(page_cursor: str | None, size: int) -> ListResult[DataStoreInfo]:
            result = await self.entry_store.list_store_names(prefix or None, page_cursor, size)
            return ListResult(
                items=[DataStoreInfo(name) for name in result.items],
                next_cursor=result.next_cursor,
            )

        size = clamp_page_size(page_size, self.config.default_page_size)
        return DataStorePages(fetch_page, size, cursor)

    def get_request_budget_for_request_type(self, request_type: RequestType | str) -> float:
        """No throttling is enforced at this layer, so every budget is unbounded."""
        return math.inf
