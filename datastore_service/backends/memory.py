"""
In-memory entry store.

Keeps entries in a dict keyed by identity. Mutations are serialized with an
``asyncio.Lock`` so conditional writes behave like a real backend under
concurrent coroutines. Intended for tests and local development.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from ..exceptions import InvalidStateError, VersionConflictError
from ..logging_utils import get_store_logger
from .base import (
    DEFAULT_PAGE_SIZE,
    Entry,
    EntryStore,
    ListFilter,
    ListResult,
    StoreKind,
    decode_cursor,
    encode_cursor,
)

logger = get_store_logger("backends.memory")

Identity = tuple[str, str, StoreKind, str]


def _position(entry: Entry, list_filter: ListFilter) -> list[Any]:
    """Keyset position of an entry under the filter's ordering."""
    if not list_filter.order_by_value:
        return [entry.key]
    sort_value = entry.sort_value if list_filter.ascending else -entry.sort_value
    return [sort_value, entry.key]


def _detached(entry: Entry | None) -> Entry | None:
    """Copy of an entry whose value cannot alias the stored one."""
    if entry is None:
        return None
    return replace(entry, value=copy.deepcopy(entry.value), metadata=dict(entry.metadata))


class MemoryEntryStore(EntryStore):
    """Entry store backed by a process-local dict."""

    def __init__(self) -> None:
        self._entries: dict[Identity, Entry] = {}
        self._lock = asyncio.Lock()

    async def fetch_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
    ) -> Entry | None:
        return _detached(self._entries.get((store_name, scope, store_kind, key)))

    def _write(
        self,
        identity: Identity,
        value: Any,
        current: Entry | None,
        metadata: dict[str, Any] | None,
    ) -> Entry:
        """Store the next version of an identity. Caller holds the lock."""
        store_name, scope, store_kind, key = identity
        now = datetime.now(UTC)
        if metadata is None:
            metadata = dict(current.metadata) if current else {}

        entry = Entry(
            store_name=store_name,
            scope=scope,
            store_kind=store_kind,
            key=key,
            value=copy.deepcopy(value),
            sort_value=value if store_kind == StoreKind.ORDERED else None,
            version=(current.version if current else 0) + 1,
            created_at=current.created_at if current else now,
            updated_at=now,
            metadata=dict(metadata),
        )
        self._entries[identity] = entry
        return entry

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
        identity = (store_name, scope, store_kind, key)
        async with self._lock:
            current = self._entries.get(identity)
            current_version = current.version if current else 0

            if expected_version is not None and expected_version != current_version:
                logger.debug(
                    "Conditional write rejected for %s/%s/%s: expected v%d, have v%d",
                    store_name,
                    scope,
                    key,
                    expected_version,
                    current_version,
                )
                raise VersionConflictError(key, expected_version, current_version)

            return _detached(self._write(identity, value, current, metadata))

    async def replace_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
        value: Any,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Entry | None, Entry]:
        identity = (store_name, scope, store_kind, key)
        async with self._lock:
            previous = self._entries.get(identity)
            written = self._write(identity, value, previous, metadata)
            return _detached(previous), _detached(written)

    async def delete_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
    ) -> Entry | None:
        async with self._lock:
            return _detached(self._entries.pop((store_name, scope, store_kind, key), None))

    async def list_entries(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        list_filter: ListFilter,
        cursor: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ListResult[Entry]:
        candidates = []
        for (name, entry_scope, kind, key), entry in self._entries.items():
            if (name, entry_scope, kind) != (store_name, scope, store_kind):
                continue
            if list_filter.prefix and not key.startswith(list_filter.prefix):
                continue
            if list_filter.min_value is not None or list_filter.max_value is not None:
                if entry.sort_value is None:
                    continue
                if list_filter.min_value is not None and entry.sort_value < list_filter.min_value:
                    continue
                if list_filter.max_value is not None and entry.sort_value > list_filter.max_value:
                    continue
            if list_filter.order_by_value and entry.sort_value is None:
                continue
            candidates.append(entry)

        candidates.sort(key=lambda e: _position(e, list_filter))

        if cursor is not None:
            after = decode_cursor(cursor, 2 if list_filter.order_by_value else 1)
            try:
                candidates = [e for e in candidates if _position(e, list_filter) > after]
            except TypeError as e:
                raise InvalidStateError(f"Cursor does not match this listing: {cursor!r}") from e

        page = candidates[:page_size]
        next_cursor = None
        if len(candidates) > page_size:
            next_cursor = encode_cursor(_position(page[-1], list_filter))
        return ListResult(items=[_detached(e) for e in page], next_cursor=next_cursor)

    async def list_store_names(
        self,
        prefix: str | None = None,
        cursor: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ListResult[str]:
        names = sorted({identity[0] for identity in self._entries})
        if prefix:
            names = [n for n in names if n.startswith(prefix)]
        if cursor is not None:
            (after,) = decode_cursor(cursor, 1)
            names = [n for n in names if n > after]

        page = names[:page_size]
        next_cursor = encode_cursor([page[-1]]) if len(names) > page_size else None
        return ListResult(items=page, next_cursor=next_cursor)
