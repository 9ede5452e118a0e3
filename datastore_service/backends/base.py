"""
Abstract remote entry store interface.

Defines the contract that every entry store backend must implement. The
store offers only primitive fetch / conditional upsert / delete / list
operations; versioning, ordering and pagination semantics are layered on
top by the store handles in ``datastore_service.datastore``.

Entry identity: (store_name, scope, store_kind, key)
Persisted fields: value, sort_value, version, metadata, created_at, updated_at
"""

from __future__ import annotations

import base64
import binascii
import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from ..exceptions import InvalidStateError

T = TypeVar("T")

DEFAULT_SCOPE = "global"
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


class StoreKind(Enum):
    """Kind of store an entry belongs to.

    STANDARD: arbitrary structured values
    ORDERED: numeric values, sortable by value
    """

    STANDARD = "standard"
    ORDERED = "ordered"


@dataclass(frozen=True)
class Entry:
    """A stored record as returned by an entry store.

    Attributes:
        store_name: Name of the data store
        scope: Scope within the store
        store_kind: Standard or ordered
        key: Entry key
        value: Stored value (JSON-compatible)
        sort_value: Sort key, equal to value for ordered entries, else None
        version: Write counter, 1 on first write
        created_at: When the entry was first written
        updated_at: When the entry was last written
        metadata: User metadata attached by SetAsync
    """

    store_name: str
    scope: str
    store_kind: StoreKind
    key: str
    value: Any
    sort_value: float | int | None
    version: int
    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ListFilter:
    """Filter and ordering for ``EntryStore.list_entries``.

    Attributes:
        prefix: Only keys starting with this prefix
        min_value: Inclusive lower bound on sort_value
        max_value: Inclusive upper bound on sort_value
        ascending: Sort direction for sort_value (keys always ascend)
        order_by_value: Order by (sort_value, key) instead of key alone
    """

    prefix: str | None = None
    min_value: float | int | None = None
    max_value: float | int | None = None
    ascending: bool = True
    order_by_value: bool = False


@dataclass
class ListResult(Generic[T]):
    """One page of a listing.

    ``next_cursor`` is None once the listing is exhausted.
    """

    items: list[T]
    next_cursor: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.next_cursor is None


def is_numeric(value: Any) -> bool:
    """True for finite int/float values; bools are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def clamp_page_size(page_size: int | None, default: int = DEFAULT_PAGE_SIZE) -> int:
    """Resolve a requested page size to the range [1, MAX_PAGE_SIZE]."""
    if page_size is None:
        return default
    return max(1, min(int(page_size), MAX_PAGE_SIZE))


def encode_cursor(position: list[Any]) -> str:
    """Encode a keyset position as an opaque cursor token."""
    raw = json.dumps(position, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str, length: int) -> list[Any]:
    """Decode a cursor produced by ``encode_cursor``.

    ``length`` is the number of position fields the listing expects.

    Raises:
        InvalidStateError: If the cursor was not issued by this store
    """
    try:
        position = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (ValueError, binascii.Error, UnicodeError) as e:
        raise InvalidStateError(f"Malformed cursor: {cursor!r}") from e
    if not isinstance(position, list) or len(position) != length:
        raise InvalidStateError(f"Malformed cursor: {cursor!r}")
    return position


class EntryStore(ABC):
    """Abstract interface for the remote entry store.

    All backends (memory, sqlite, cosmos) must implement this interface.
    Transport failures are raised as ``RemoteUnavailableError``.
    """

    async def initialize(self) -> None:
        """Prepare connections and schema. Safe to call more than once."""

    async def close(self) -> None:
        """Release connections."""

    async def __aenter__(self) -> EntryStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @abstractmethod
    async def fetch_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
    ) -> Entry | None:
        """Fetch the live entry for an identity.

        Returns:
            The entry, or None if absent
        """
        ...

    @abstractmethod
    async def upsert_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
        value: Any,
        expected_version: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Entry:
        """Write an entry, bumping its version by one.

        Args:
            store_name: Store name
            scope: Store scope
            store_kind: Standard or ordered; ordered entries get sort_value = value
            key: Entry key
            value: New value
            expected_version: If given, the write only succeeds when the stored
                version equals it (0 meaning "must not exist")
            metadata: Replacement metadata; None keeps the existing metadata

        Returns:
            The entry as written

        Raises:
            VersionConflictError: If expected_version does not match
        """
        ...

    @abstractmethod
    async def replace_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
        value: Any,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Entry | None, Entry]:
        """Unconditionally write an entry and report what it overwrote.

        The previous entry is the one this write actually replaced, not one
        read beforehand.

        Returns:
            ``(previous, written)``; previous is None if the key was absent
        """
        ...

    @abstractmethod
    async def delete_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
    ) -> Entry | None:
        """Delete an entry.

        Returns:
            The entry that existed before deletion, or None
        """
        ...

    @abstractmethod
    async def list_entries(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        list_filter: ListFilter,
        cursor: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ListResult[Entry]:
        """List one page of entries matching a filter.

        Raises:
            InvalidStateError: If the cursor is not recognised
        """
        ...

    @abstractmethod
    async def list_store_names(
        self,
        prefix: str | None = None,
        cursor: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ListResult[str]:
        """List one page of distinct store names, ascending."""
        ...
