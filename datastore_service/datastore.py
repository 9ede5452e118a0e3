"""
Data store handles.

``DataStore`` provides versioned get / set / update / increment / remove
semantics for one (store name, scope) coordinate on top of a remote
``EntryStore``. ``OrderedDataStore`` constrains values to numbers and adds
sorted range listing.

Concurrency model:
- Every call is a fresh round trip; nothing is cached between calls.
- ``set`` and ``remove`` are last-writer-wins.
- ``update`` (and ``increment``, which routes through it) is the only
  atomic read-modify-write: it commits with an expected version and retries
  from a fresh read when another writer got in first.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .backends.base import (
    DEFAULT_SCOPE,
    Entry,
    EntryStore,
    ListFilter,
    ListResult,
    StoreKind,
    clamp_page_size,
    is_numeric,
)
from .config import DataStoreConfig
from .exceptions import (
    ConcurrencyExhaustedError,
    InvalidValueTypeError,
    ValidationError,
    VersionConflictError,
    VersionHistoryNotImplementedError,
)
from .logging_utils import StoreLoggerAdapter, get_store_logger
from .pagination import DataStorePages

if TYPE_CHECKING:
    from .subscriptions import Subscription, SubscriptionPoller, UpdateCallback

logger = get_store_logger("datastore")

MAX_KEY_LENGTH = 50

Transform = Callable[[Any], Any]


@dataclass(frozen=True)
class SetOptions:
    """Options for ``DataStore.set``.

    Attributes:
        metadata: User metadata stored alongside the value
    """

    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DataStoreKeyInfo:
    """Information about a stored key. The version is intentionally absent."""

    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any]


@dataclass(frozen=True)
class DataStoreKey:
    """One item of a ``list_keys`` page."""

    key: str


@dataclass(frozen=True)
class OrderedEntry:
    """One item of a ``get_sorted`` page."""

    key: str
    value: int | float


def validate_key(key: Any) -> str:
    """Check a key is a non-empty string of at most MAX_KEY_LENGTH characters."""
    if not isinstance(key, str) or not key:
        raise ValidationError("key", "must be a non-empty string", repr(key))
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError("key", f"must be at most {MAX_KEY_LENGTH} characters", key)
    return key


class DataStore:
    """Versioned key-value handle for one (name, scope) coordinate.

    Handles are cheap and stateless apart from their coordinates; obtain them
    from ``DataStoreService.get_data_store``.
    """

    store_kind = StoreKind.STANDARD

    def __init__(
        self,
        name: str,
        entry_store: EntryStore,
        config: DataStoreConfig | None = None,
        scope: str = DEFAULT_SCOPE,
        poller: SubscriptionPoller | None = None,
    ):
        self.name = name
        self.scope = scope
        self.config = config or DataStoreConfig()
        self._entries = entry_store
        self._poller = poller
        self._log = StoreLoggerAdapter(
            logger,
            {"store_name": name, "scope": scope, "store_kind": self.store_kind.value},
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, scope={self.scope!r})"

    # =========================================================================
    # Validation hooks
    # =========================================================================

    def _validate_value(self, key: str, value: Any) -> None:
        """Reject values the entry store cannot persist."""
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise ValidationError("value", f"not JSON-serializable: {e}") from e

    # =========================================================================
    # Internal entry access
    # =========================================================================

    async def _read_entry(self, key: str) -> Entry | None:
        """Fetch the full entry, version included.

        Used by ``update`` and the subscription poller; the public API never
        exposes versions.
        """
        return await self._entries.fetch_entry(self.name, self.scope, self.store_kind, key)

    def _retry_delay(self, attempt: int) -> float:
        delay = self.config.update_retry_delay * (2**attempt)
        return min(delay, self.config.update_retry_max_delay)

    # =========================================================================
    # Public API
    # =========================================================================

    async def get(self, key: str) -> Any:
        """Return the current value, or None if the key is absent.

        Raises:
            RemoteUnavailableError: If the entry store cannot be reached
        """
        entry = await self._read_entry(validate_key(key))
        return entry.value if entry else None

    async def get_with_info(self, key: str) -> tuple[Any, DataStoreKeyInfo | None]:
        """Return ``(value, key_info)``, or ``(None, None)`` if absent."""
        entry = await self._read_entry(validate_key(key))
        if entry is None:
            return None, None
        info = DataStoreKeyInfo(
            created_at=entry.created_at,
            updated_at=entry.updated_at,
            metadata=dict(entry.metadata),
        )
        return entry.value, info

    async def set(self, key: str, value: Any, options: SetOptions | None = None) -> Any:
        """Overwrite a key unconditionally.

        Last writer wins: concurrent writers are not detected. Use ``update``
        when the new value depends on the old one.

        Args:
            key: Entry key
            value: New value (must not be None)
            options: Optional metadata to store with the value

        Returns:
            The value this write replaced, or None
        """
        validate_key(key)
        if value is None:
            raise ValidationError("value", "cannot set None; use remove() to delete a key")
        self._validate_value(key, value)

        previous, _ = await self._entries.replace_entry(
            self.name,
            self.scope,
            self.store_kind,
            key,
            value,
            metadata=dict(options.metadata) if options else None,
        )
        return previous.value if previous else None

    async def update(self, key: str, transform: Transform) -> Any:
        """Atomically transform the value stored under a key.

        The transform receives the current value (None if absent) and returns
        the new value; returning None cancels the update without writing.
        It may be called several times: each attempt re-reads the entry and
        commits only if nobody else wrote in between.

        Args:
            key: Entry key
            transform: ``current -> new`` (may be a coroutine function)

        Returns:
            The committed value, or None if the transform cancelled

        Raises:
            ConcurrencyExhaustedError: If every attempt lost a write race
            RemoteUnavailableError: If the entry store cannot be reached
        """
        validate_key(key)
        attempts = self.config.update_retries + 1

        for attempt in range(attempts):
            entry = await self._read_entry(key)
            current_version = entry.version if entry else 0

            new_value = transform(entry.value if entry else None)
            if inspect.isawaitable(new_value):
                new_value = await new_value
            if new_value is None:
                self._log.debug("Update of %s cancelled by transform", key)
                return None
            self._validate_value(key, new_value)

            try:
                await self._entries.upsert_entry(
                    self.name,
                    self.scope,
                    self.store_kind,
                    key,
                    new_value,
                    expected_version=current_version,
                )
            except VersionConflictError as e:
                self._log.debug(
                    "Update of %s conflicted (attempt %d/%d, read v%d, now v%s)",
                    key,
                    attempt + 1,
                    attempts,
                    current_version,
                    e.actual_version,
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(self._retry_delay(attempt))
                continue

            if attempt > 0:
                self._log.info(
                    "Update of %s committed after %d conflicting attempts", key, attempt
                )
            return new_value

        self._log.error("Update of %s gave up after %d attempts", key, attempts)
        raise ConcurrencyExhaustedError(key, attempts)

    async def increment(self, key: str, delta: int | float = 1) -> int | float:
        """Atomically add ``delta`` to a numeric value (absent counts as 0).

        Raises:
            InvalidValueTypeError: If delta or the stored value is not numeric
            ConcurrencyExhaustedError: If every attempt lost a write race
        """
        if not is_numeric(delta):
            raise InvalidValueTypeError(key, delta, "delta must be numeric")

        def add(current: Any) -> int | float:
            if current is None:
                return delta
            if not is_numeric(current):
                raise InvalidValueTypeError(key, current, "stored value is not numeric")
            return current + delta

        return await self.update(key, add)

    async def remove(self, key: str) -> Any:
        """Delete a key unconditionally.

        Returns:
            The value stored immediately before deletion, or None
        """
        entry = await self._entries.delete_entry(
            self.name, self.scope, self.store_kind, validate_key(key)
        )
        return entry.value if entry else None

    async def list_keys(
        self,
        prefix: str | None = None,
        page_size: int | None = None,
        cursor: str | None = None,
    ) -> DataStorePages[DataStoreKey]:
        """List keys in ascending order.

        The returned pages are lazy: call ``advance_to_next_page`` (or iterate
        with ``async for``) to load the first page.

        Args:
            prefix: Only keys starting with this prefix
            page_size: Keys per page (default from config, at most 100)
            cursor: Resume from a cursor saved from an earlier listing
        """
        list_filter = ListFilter(prefix=prefix or None)

        async def fetch_page(page_cursor: str | None, size: int) -> ListResult[DataStoreKey]:
            result = await self._entries.list_entries(
                self.name, self.scope, self.store_kind, list_filter, page_cursor, size
            )
            return ListResult(
                items=[DataStoreKey(e.key) for e in result.items],
                next_cursor=result.next_cursor,
            )

        size = clamp_page_size(page_size, self.config.default_page_size)
        return DataStorePages(fetch_page, size, cursor)

    async def on_update(self, key: str, callback: UpdateCallback) -> Subscription:
        """Call ``callback(new_value)`` whenever the key changes.

        Changes are detected by polling every ``on_update_poll_interval``
        seconds, so a callback fires at most one interval (plus one fetch)
        after the write. Deletion fires once with None.

        Returns:
            A subscription; call ``disconnect()`` to stop notifications

        Raises:
            InvalidStateError: If the service has been closed
        """
        if self._poller is None:
            raise ValidationError("on_update", "store handle has no subscription poller")
        return await self._poller.subscribe(self, validate_key(key), callback)

    # =========================================================================
    # Version history (not retained)
    # =========================================================================

    async def get_version(self, key: str, version: str) -> Any:
        raise VersionHistoryNotImplementedError("GetVersionAsync")

    async def get_version_at_time(self, key: str, timestamp: datetime | float) -> Any:
        raise VersionHistoryNotImplementedError("GetVersionAtTimeAsync")

    async def list_versions(
        self,
        key: str,
        ascending: bool = True,
        min_date: datetime | None = None,
        max_date: datetime | None = None,
        page_size: int | None = None,
    ) -> DataStorePages[Any]:
        raise VersionHistoryNotImplementedError("GetVersionsAsync")

    async def remove_version(self, key: str, version: str) -> None:
        raise VersionHistoryNotImplementedError("RemoveVersionAsync")


class OrderedDataStore(DataStore):
    """Numeric-only data store with sorted range listing.

    Values double as sort keys. Ties on value are broken by key, ascending,
    in both sort directions, so page boundaries are stable.
    """

    store_kind = StoreKind.ORDERED

    def _validate_value(self, key: str, value: Any) -> None:
        if not is_numeric(value):
            raise InvalidValueTypeError(key, value, "ordered data stores only hold finite numbers")

    async def get_sorted(
        self,
        ascending: bool = True,
        page_size: int | None = None,
        min_value: int | float | None = None,
        max_value: int | float | None = None,
    ) -> DataStorePages[OrderedEntry]:
        """List entries sorted by value.

        Args:
            ascending: Sort direction of values
            page_size: Entries per page (default from config, at most 100)
            min_value: Inclusive lower bound (None for open-ended)
            max_value: Inclusive upper bound (None for open-ended)
        """
        for name, bound in (("min_value", min_value), ("max_value", max_value)):
            if bound is not None and not is_numeric(bound):
                raise ValidationError(name, "must be a finite number", repr(bound))
        if min_value is not None and max_value is not None and min_value > max_value:
            raise ValidationError("min_value", "must not exceed max_value", repr(min_value))

        list_filter = ListFilter(
            min_value=min_value,
            max_value=max_value,
            ascending=ascending,
            order_by_value=True,
        )

        async def fetch_page(page_cursor: str | None, size: int) -> ListResult[OrderedEntry]:
            result = await self._entries.list_entries(
                self.name, self.scope, self.store_kind, list_filter, page_cursor, size
            )
            return ListResult(
                items=[OrderedEntry(e.key, e.value) for e in result.items],
                next_cursor=result.next_cursor,
            )

        size = clamp_page_size(page_size, self.config.default_page_size)
        return DataStorePages(fetch_page, size)
