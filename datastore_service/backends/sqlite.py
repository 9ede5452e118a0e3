"""
SQLite entry store.

Persists entries in a single table whose primary key is the entry identity.
Conditional writes are single statements, so SQLite's own atomicity provides
the compare-and-swap:

- expected version 0: INSERT ... ON CONFLICT DO NOTHING, no row returned is a conflict
- expected version n: UPDATE ... WHERE version = n, zero rows is a conflict
- unconditional: INSERT ... ON CONFLICT DO UPDATE SET version = version + 1

All coroutines share one connection and therefore one transaction, so each
write runs its statement and commit under a lock; no other write can be
pending when a commit happens.

Requires SQLite 3.35+ for RETURNING.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from ..config import DEFAULT_TABLE_NAME
from ..exceptions import ConfigurationError, RemoteUnavailableError, VersionConflictError
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

logger = get_store_logger("backends.sqlite")

# Columns in the order _row_to_entry expects them
ENTRY_COLUMNS = (
    "store_name",
    "scope",
    "store_kind",
    "key",
    "value_json",
    "sort_value",
    "version",
    "metadata_json",
    "created_at",
    "updated_at",
)

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class SQLiteConfig:
    """Configuration for SQLite storage."""

    db_path: str | Path = ":memory:"
    table_name: str = DEFAULT_TABLE_NAME

    @classmethod
    def from_env(cls) -> SQLiteConfig:
        """Create config from environment variables."""
        return cls(
            db_path=os.environ.get("DATASTORE_SQLITE_PATH", ":memory:"),
            table_name=os.environ.get("DATASTORE_TABLE_NAME", DEFAULT_TABLE_NAME),
        )


def _row_to_entry(row: Any) -> Entry:
    (
        store_name,
        scope,
        store_kind,
        key,
        value_json,
        sort_value,
        version,
        metadata_json,
        created_at,
        updated_at,
    ) = row
    value = json.loads(value_json)
    kind = StoreKind(store_kind)
    if kind == StoreKind.ORDERED:
        # REAL column loses int-ness; the JSON value is authoritative
        sort_value = value
    return Entry(
        store_name=store_name,
        scope=scope,
        store_kind=kind,
        key=key,
        value=value,
        sort_value=sort_value,
        version=version,
        created_at=datetime.fromisoformat(created_at),
        updated_at=datetime.fromisoformat(updated_at),
        metadata=json.loads(metadata_json) if metadata_json else {},
    )


class SQLiteEntryStore(EntryStore):
    """
    Entry store backed by a local SQLite database.

    Features:
    - Single file database (or in-memory)
    - Version CAS enforced by single-statement writes
    - Keyset pagination over (key) or (sort_value, key)
    """

    def __init__(self, config: SQLiteConfig | None = None):
        self.config = config or SQLiteConfig()
        if not _TABLE_NAME_RE.match(self.config.table_name):
            raise ConfigurationError(
                "table_name", f"not a valid identifier: {self.config.table_name!r}"
            )
        self.table = self.config.table_name
        self.conn: aiosqlite.Connection | None = None
        self._initialized = False
        self._write_lock = asyncio.Lock()
        self._columns = ", ".join(ENTRY_COLUMNS)

    @classmethod
    async def create(cls, config: SQLiteConfig | None = None) -> SQLiteEntryStore:
        """Create and initialize a SQLite entry store."""
        if config is None:
            config = SQLiteConfig.from_env()
        store = cls(config)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._initialized:
            return

        try:
            self.conn = await aiosqlite.connect(str(self.config.db_path))
            await self.conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    store_name TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    store_kind TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value_json TEXT NOT NULL,
                    sort_value REAL,
                    version INTEGER NOT NULL,
                    metadata_json TEXT NOT NULL DEFAULT '{{}}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (store_name, scope, store_kind, key)
                )
            """)
            await self.conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self.table}_sort
                ON {self.table} (store_name, scope, store_kind, sort_value, key)
            """)
            await self.conn.commit()
        except (aiosqlite.Error, OSError) as e:
            raise RemoteUnavailableError("initialize", e) from e

        self._initialized = True
        logger.info("SQLite entry store ready: %s (table %s)", self.config.db_path, self.table)

    async def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None:
            raise RemoteUnavailableError(operation, RuntimeError("Store not initialized"))
        return self.conn

    async def _fetchall(self, operation: str, sql: str, params: tuple = ()) -> list[Any]:
        conn = self._require_conn(operation)
        try:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise RemoteUnavailableError(operation, e) from e

    async def _write(self, operation: str, sql: str, params: tuple) -> list[Any]:
        """Run a single write statement and commit it before the next write starts."""
        (rows,) = await self._transaction(operation, [(sql, params)])
        return rows

    async def _transaction(
        self, operation: str, statements: list[tuple[str, tuple]]
    ) -> list[list[Any]]:
        """Run statements in order and commit them together.

        Returns:
            The rows each statement produced
        """
        conn = self._require_conn(operation)
        async with self._write_lock:
            try:
                results = []
                for sql, params in statements:
                    async with conn.execute(sql, params) as cursor:
                        results.append(list(await cursor.fetchall()))
                await conn.commit()
                return results
            except aiosqlite.Error as e:
                raise RemoteUnavailableError(operation, e) from e

    def _select_statement(self, identity: tuple) -> tuple[str, tuple]:
        return (
            f"""
            SELECT {self._columns} FROM {self.table}
            WHERE store_name = ? AND scope = ? AND store_kind = ? AND key = ?
            """,
            identity,
        )

    def _overwrite_statement(
        self,
        identity: tuple,
        value: Any,
        store_kind: StoreKind,
        metadata: dict[str, Any] | None,
    ) -> tuple[str, tuple]:
        now = datetime.now(UTC).isoformat()
        sort_value = value if store_kind == StoreKind.ORDERED else None
        metadata_json = json.dumps(metadata) if metadata is not None else None
        return (
            f"""
            INSERT INTO {self.table} ({self._columns})
            VALUES (?, ?, ?, ?, ?, ?, 1, COALESCE(?, '{{}}'), ?, ?)
            ON CONFLICT (store_name, scope, store_kind, key) DO UPDATE SET
                value_json = excluded.value_json,
                sort_value = excluded.sort_value,
                version = version + 1,
                metadata_json = COALESCE(?, metadata_json),
                updated_at = excluded.updated_at
            RETURNING {self._columns}
            """,
            (*identity, json.dumps(value), sort_value, metadata_json, now, now, metadata_json),
        )

    async def fetch_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
    ) -> Entry | None:
        rows = await self._fetchall(
            "fetch_entry", *self._select_statement((store_name, scope, store_kind.value, key))
        )
        return _row_to_entry(rows[0]) if rows else None

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
        identity = (store_name, scope, store_kind.value, key)
        if expected_version is None:
            rows = await self._write(
                "upsert_entry", *self._overwrite_statement(identity, value, store_kind, metadata)
            )
            return _row_to_entry(rows[0])

        now = datetime.now(UTC).isoformat()
        value_json = json.dumps(value)
        sort_value = value if store_kind == StoreKind.ORDERED else None
        metadata_json = json.dumps(metadata) if metadata is not None else None

        if expected_version == 0:
            rows = await self._write(
                "upsert_entry",
                f"""
                INSERT INTO {self.table} ({self._columns})
                VALUES (?, ?, ?, ?, ?, ?, 1, COALESCE(?, '{{}}'), ?, ?)
                ON CONFLICT (store_name, scope, store_kind, key) DO NOTHING
                RETURNING {self._columns}
                """,
                (*identity, value_json, sort_value, metadata_json, now, now),
            )
        else:
            rows = await self._write(
                "upsert_entry",
                f"""
                UPDATE {self.table} SET
                    value_json = ?,
                    sort_value = ?,
                    version = version + 1,
                    metadata_json = COALESCE(?, metadata_json),
                    updated_at = ?
                WHERE store_name = ? AND scope = ? AND store_kind = ? AND key = ?
                    AND version = ?
                RETURNING {self._columns}
                """,
                (value_json, sort_value, metadata_json, now, *identity, expected_version),
            )

        if not rows:
            current = await self.fetch_entry(store_name, scope, store_kind, key)
            raise VersionConflictError(key, expected_version, current.version if current else 0)
        return _row_to_entry(rows[0])

    async def replace_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
        value: Any,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Entry | None, Entry]:
        identity = (store_name, scope, store_kind.value, key)
        previous, written = await self._transaction(
            "replace_entry",
            [
                self._select_statement(identity),
                self._overwrite_statement(identity, value, store_kind, metadata),
            ],
        )
        return (_row_to_entry(previous[0]) if previous else None), _row_to_entry(written[0])

    async def delete_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
    ) -> Entry | None:
        rows = await self._write(
            "delete_entry",
            f"""
            DELETE FROM {self.table}
            WHERE store_name = ? AND scope = ? AND store_kind = ? AND key = ?
            RETURNING {self._columns}
            """,
            (store_name, scope, store_kind.value, key),
        )
        return _row_to_entry(rows[0]) if rows else None

    async def list_entries(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        list_filter: ListFilter,
        cursor: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ListResult[Entry]:
        conditions = ["store_name = ?", "scope = ?", "store_kind = ?"]
        params: list[Any] = [store_name, scope, store_kind.value]

        if list_filter.prefix:
            conditions.append("substr(key, 1, ?) = ?")
            params.extend([len(list_filter.prefix), list_filter.prefix])
        if list_filter.min_value is not None:
            conditions.append("sort_value >= ?")
            params.append(list_filter.min_value)
        if list_filter.max_value is not None:
            conditions.append("sort_value <= ?")
            params.append(list_filter.max_value)

        if list_filter.order_by_value:
            conditions.append("sort_value IS NOT NULL")
            direction = "ASC" if list_filter.ascending else "DESC"
            order_by = f"sort_value {direction}, key ASC"
            if cursor is not None:
                after_value, after_key = decode_cursor(cursor, 2)
                beyond = ">" if list_filter.ascending else "<"
                conditions.append(f"(sort_value {beyond} ? OR (sort_value = ? AND key > ?))")
                params.extend([after_value, after_value, after_key])
        else:
            order_by = "key ASC"
            if cursor is not None:
                (after_key,) = decode_cursor(cursor, 1)
                conditions.append("key > ?")
                params.append(after_key)

        rows = await self._fetchall(
            "list_entries",
            f"""
            SELECT {self._columns} FROM {self.table}
            WHERE {" AND ".join(conditions)}
            ORDER BY {order_by}
            LIMIT ?
            """,
            (*params, page_size + 1),
        )

        entries = [_row_to_entry(row) for row in rows[:page_size]]
        next_cursor = None
        if len(rows) > page_size:
            last = entries[-1]
            position = [last.sort_value, last.key] if list_filter.order_by_value else [last.key]
            next_cursor = encode_cursor(position)
        return ListResult(items=entries, next_cursor=next_cursor)

    async def list_store_names(
        self,
        prefix: str | None = None,
        cursor: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ListResult[str]:
        conditions = ["1 = 1"]
        params: list[Any] = []
        if prefix:
            conditions.append("substr(store_name, 1, ?) = ?")
            params.extend([len(prefix), prefix])
        if cursor is not None:
            (after,) = decode_cursor(cursor, 1)
            conditions.append("store_name > ?")
            params.append(after)

        rows = await self._fetchall(
            "list_store_names",
            f"""
            SELECT DISTINCT store_name FROM {self.table}
            WHERE {" AND ".join(conditions)}
            ORDER BY store_name ASC
            LIMIT ?
            """,
            (*params, page_size + 1),
        )

        names = [row[0] for row in rows[:page_size]]
        next_cursor = encode_cursor([names[-1]]) if len(rows) > page_size else None
        return ListResult(items=names, next_cursor=next_cursor)
