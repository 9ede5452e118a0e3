"""
Cosmos DB entry store.

Stores every entry as one document in a single container:

- Partition key path: /partitionKey
- Partition key value: {store_name}|{scope}|{store_kind}
- Document id: sha256 of the entry key (Cosmos ids cannot hold '/', '?', '#')

Compare-and-swap maps onto Cosmos optimistic concurrency:
- expected version 0 → create_item, 409 Conflict means someone got there first
- expected version n → replace_item conditioned on the document ETag,
  412 Precondition Failed means the document moved on

Listings page by keyset: each query asks for one document more than the page
size, and the cursor encodes the position of the last document returned.
A next cursor is only issued when that extra document exists.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from azure.core import MatchConditions
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient, DatabaseProxy
from azure.cosmos.exceptions import (
    CosmosAccessConditionFailedError,
    CosmosHttpResponseError,
    CosmosResourceExistsError,
    CosmosResourceNotFoundError,
)

from ..config import DEFAULT_TABLE_NAME, CosmosAuthMethod
from ..exceptions import (
    AuthenticationError,
    RemoteUnavailableError,
    VersionConflictError,
)
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

logger = get_store_logger("backends.cosmos")

T = TypeVar("T")

# Default retry configuration for throttling and server errors
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0  # seconds

# Unconditional writes still need a read to compute the next version
MAX_UNCONDITIONAL_WRITE_ATTEMPTS = 10

INDEXING_POLICY: dict[str, Any] = {
    "indexingMode": "consistent",
    "includedPaths": [{"path": "/*"}],
    "excludedPaths": [{"path": '/"_etag"/?'}],
    "compositeIndexes": [
        [
            {"path": "/sortValue", "order": "ascending"},
            {"path": "/key", "order": "ascending"},
        ],
        [
            {"path": "/sortValue", "order": "descending"},
            {"path": "/key", "order": "ascending"},
        ],
    ],
}


@dataclass
class CosmosConfig:
    """Configuration for Cosmos DB connection.

    Attributes:
        endpoint: Cosmos DB account endpoint URL
        database_name: Name of the database to use
        container_name: Name of the entries container
        auth_method: How to authenticate
        key: Account key (only for KEY auth)
        max_retries: Maximum attempts for throttled or failed requests
        retry_delay: Base delay between retries (seconds)
    """

    endpoint: str
    database_name: str = "datastore"
    container_name: str = DEFAULT_TABLE_NAME
    auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL
    key: str | None = None
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY

    @classmethod
    def from_env(cls) -> CosmosConfig:
        """Create config from environment variables.

        Raises:
            AuthenticationError: If DATASTORE_COSMOS_ENDPOINT is missing
        """
        endpoint = os.environ.get("DATASTORE_COSMOS_ENDPOINT")
        if not endpoint:
            raise AuthenticationError(
                "cosmos", "DATASTORE_COSMOS_ENDPOINT environment variable not set"
            )

        auth_method_str = os.environ.get("DATASTORE_COSMOS_AUTH_METHOD", "default_credential")
        try:
            auth_method = CosmosAuthMethod(auth_method_str.lower())
        except ValueError:
            auth_method = CosmosAuthMethod.DEFAULT_CREDENTIAL

        return cls(
            endpoint=endpoint,
            database_name=os.environ.get("DATASTORE_COSMOS_DATABASE", "datastore"),
            container_name=os.environ.get("DATASTORE_TABLE_NAME", DEFAULT_TABLE_NAME),
            auth_method=auth_method,
            key=os.environ.get("DATASTORE_COSMOS_KEY"),
        )


def _get_credential(config: CosmosConfig) -> Any:
    """Get the credential for the configured auth method.

    Raises:
        AuthenticationError: If credential cannot be created
    """
    if config.auth_method == CosmosAuthMethod.KEY:
        if not config.key:
            raise AuthenticationError(config.endpoint, "key required for KEY authentication")
        return config.key

    if config.auth_method == CosmosAuthMethod.DEFAULT_CREDENTIAL:
        from azure.identity.aio import DefaultAzureCredential

        return DefaultAzureCredential()

    raise AuthenticationError(config.endpoint, f"Unsupported auth method: {config.auth_method}")


def make_partition_key(store_name: str, scope: str, store_kind: StoreKind) -> str:
    """Partition key value for one (store, scope, kind) coordinate."""
    return f"{store_name}|{scope}|{store_kind.value}"


def make_document_id(key: str) -> str:
    """Cosmos-safe document id for an entry key."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def build_list_query(
    list_filter: ListFilter,
    after: list[Any] | None = None,
    limit: int | None = None,
) -> tuple[str, list[dict[str, Any]]]:
    """Build the SQL query and parameters for a single-partition listing.

    Args:
        list_filter: Prefix, value range and ordering
        after: Keyset position to resume after, ``[key]`` or ``[sort_value, key]``
        limit: Maximum number of documents (TOP)
    """
    conditions: list[str] = []
    parameters: list[dict[str, Any]] = []

    if list_filter.prefix:
        conditions.append("STARTSWITH(c.key, @prefix)")
        parameters.append({"name": "@prefix", "value": list_filter.prefix})
    if list_filter.min_value is not None:
        conditions.append("c.sortValue >= @minValue")
        parameters.append({"name": "@minValue", "value": list_filter.min_value})
    if list_filter.max_value is not None:
        conditions.append("c.sortValue <= @maxValue")
        parameters.append({"name": "@maxValue", "value": list_filter.max_value})

    if list_filter.order_by_value:
        conditions.append("IS_NUMBER(c.sortValue)")
        direction = "ASC" if list_filter.ascending else "DESC"
        order_by = f"ORDER BY c.sortValue {direction}, c.key ASC"
        if after is not None:
            beyond = ">" if list_filter.ascending else "<"
            conditions.append(
                f"(c.sortValue {beyond} @afterValue"
                " OR (c.sortValue = @afterValue AND c.key > @afterKey))"
            )
            parameters.append({"name": "@afterValue", "value": after[0]})
            parameters.append({"name": "@afterKey", "value": after[1]})
    else:
        order_by = "ORDER BY c.key ASC"
        if after is not None:
            conditions.append("c.key > @afterKey")
            parameters.append({"name": "@afterKey", "value": after[0]})

    select = "SELECT *"
    if limit is not None:
        select = "SELECT TOP @limit *"
        parameters.append({"name": "@limit", "value": limit})

    where = f"WHERE {' AND '.join(conditions)} " if conditions else ""
    return f"{select} FROM c {where}{order_by}", parameters


def _document_to_entry(doc: dict[str, Any]) -> Entry:
    return Entry(
        store_name=doc["storeName"],
        scope=doc["scope"],
        store_kind=StoreKind(doc["storeKind"]),
        key=doc["key"],
        value=doc.get("value"),
        sort_value=doc.get("sortValue"),
        version=doc["version"],
        created_at=datetime.fromisoformat(doc["createdAt"]),
        updated_at=datetime.fromisoformat(doc["updatedAt"]),
        metadata=doc.get("metadata") or {},
    )


class CosmosEntryStore(EntryStore):
    """Entry store backed by an Azure Cosmos DB container.

    Container schema:
    {
        "id": "{sha256(key)}",
        "partitionKey": "{store_name}|{scope}|{store_kind}",
        "storeName": "...",
        "scope": "...",
        "storeKind": "standard|ordered",
        "key": "...",
        "value": <any>,
        "sortValue": <number|null>,
        "version": <int>,
        "metadata": {...},
        "createdAt": "{iso_timestamp}",
        "updatedAt": "{iso_timestamp}"
    }
    """

    def __init__(self, config: CosmosConfig):
        self.config = config
        self._client: CosmosClient | None = None
        self._credential: Any = None
        self._database: DatabaseProxy | None = None
        self._container: ContainerProxy | None = None
        self._initialized = False

    @classmethod
    async def create(cls, config: CosmosConfig | None = None) -> CosmosEntryStore:
        """Create and initialize a Cosmos entry store."""
        if config is None:
            config = CosmosConfig.from_env()
        store = cls(config)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Connect and ensure the database and container exist."""
        if self._initialized:
            return

        self._credential = _get_credential(self.config)
        try:
            self._client = CosmosClient(self.config.endpoint, credential=self._credential)
            self._database = await self._client.create_database_if_not_exists(
                id=self.config.database_name
            )
            self._container = await self._database.create_container_if_not_exists(
                id=self.config.container_name,
                partition_key=PartitionKey(path="/partitionKey"),
                indexing_policy=INDEXING_POLICY,
            )
        except CosmosHttpResponseError as e:
            await self.close()
            if e.status_code == 401:
                raise AuthenticationError(self.config.endpoint, str(e)) from e
            raise RemoteUnavailableError("initialize", e) from e

        self._initialized = True
        logger.info(
            "Cosmos entry store ready: %s/%s",
            self.config.database_name,
            self.config.container_name,
        )

    async def close(self) -> None:
        """Close the Cosmos DB connection."""
        if self._client:
            await self._client.close()
            self._client = None
        if self._credential is not None and not isinstance(self._credential, str):
            await self._credential.close()
        self._credential = None
        self._database = None
        self._container = None
        self._initialized = False

    def _get_container(self, operation: str) -> ContainerProxy:
        if self._container is None:
            raise RemoteUnavailableError(operation, RuntimeError("Store not initialized"))
        return self._container

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run a Cosmos call, retrying throttling (429) and server errors (5xx).

        Other client errors propagate untouched so callers can map 404, 409
        and 412 onto entry semantics.
        """
        last_error: Exception | None = None

        for attempt in range(self.config.max_retries):
            try:
                return await call()
            except CosmosHttpResponseError as e:
                if e.status_code != 429 and 400 <= (e.status_code or 0) < 500:
                    raise
                last_error = e
                if attempt < self.config.max_retries - 1:
                    delay = self.config.retry_delay * (2**attempt)
                    logger.warning(
                        "Cosmos %s failed with %s, retrying in %.1fs",
                        operation,
                        e.status_code,
                        delay,
                    )
                    await asyncio.sleep(delay)

        raise RemoteUnavailableError(operation, last_error)

    async def _read_document(
        self, container: ContainerProxy, doc_id: str, partition_key: str
    ) -> dict[str, Any] | None:
        try:
            return await self._with_retry(
                "fetch_entry",
                lambda: container.read_item(item=doc_id, partition_key=partition_key),
            )
        except CosmosResourceNotFoundError:
            return None
        except CosmosHttpResponseError as e:
            raise RemoteUnavailableError("fetch_entry", e) from e

    async def fetch_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
    ) -> Entry | None:
        container = self._get_container("fetch_entry")
        doc = await self._read_document(
            container, make_document_id(key), make_partition_key(store_name, scope, store_kind)
        )
        return _document_to_entry(doc) if doc else None

    async def _write_document(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
        value: Any,
        expected_version: int | None,
        metadata: dict[str, Any] | None,
    ) -> tuple[dict[str, Any] | None, dict[str, Any]]:
        """Write the next version of a document.

        Returns:
            The document this write replaced (None if it created one) and
            the document as written
        """
        container = self._get_container("upsert_entry")
        doc_id = make_document_id(key)
        partition_key = make_partition_key(store_name, scope, store_kind)

        attempts = 1 if expected_version is not None else MAX_UNCONDITIONAL_WRITE_ATTEMPTS
        for _ in range(attempts):
            current = await self._read_document(container, doc_id, partition_key)
            current_version = current["version"] if current else 0
            if metadata is not None:
                new_metadata = metadata
            else:
                new_metadata = (current or {}).get("metadata") or {}
            if expected_version is not None and expected_version != current_version:
                raise VersionConflictError(key, expected_version, current_version)

            now = datetime.now(UTC).isoformat()
            body = {
                "id": doc_id,
                "partitionKey": partition_key,
                "storeName": store_name,
                "scope": scope,
                "storeKind": store_kind.value,
                "key": key,
                "value": value,
                "sortValue": value if store_kind == StoreKind.ORDERED else None,
                "version": current_version + 1,
                "metadata": new_metadata,
                "createdAt": current["createdAt"] if current else now,
                "updatedAt": now,
            }

            try:
                if current is None:
                    written = await self._with_retry(
                        "upsert_entry", lambda: container.create_item(body=body)
                    )
                else:
                    etag = current["_etag"]
                    written = await self._with_retry(
                        "upsert_entry",
                        lambda: container.replace_item(
                            item=doc_id,
                            body=body,
                            etag=etag,
                            match_condition=MatchConditions.IfNotModified,
                        ),
                    )
                return current, written
            except (
                CosmosResourceExistsError,
                CosmosAccessConditionFailedError,
                CosmosResourceNotFoundError,
            ):
                # Another writer created, replaced or deleted it since our read
                logger.debug("Cosmos write race on %s (read v%d)", key, current_version)
                if expected_version is not None:
                    raise VersionConflictError(key, expected_version) from None
                continue
            except CosmosHttpResponseError as e:
                raise RemoteUnavailableError("upsert_entry", e) from e

        raise RemoteUnavailableError(
            "upsert_entry", RuntimeError(f"write contention on {key} did not settle")
        )

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
        _, written = await self._write_document(
            store_name, scope, store_kind, key, value, expected_version, metadata
        )
        return _document_to_entry(written)

    async def replace_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
        value: Any,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Entry | None, Entry]:
        previous, written = await self._write_document(
            store_name, scope, store_kind, key, value, None, metadata
        )
        return (_document_to_entry(previous) if previous else None), _document_to_entry(written)

    async def delete_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
    ) -> Entry | None:
        container = self._get_container("delete_entry")
        doc_id = make_document_id(key)
        partition_key = make_partition_key(store_name, scope, store_kind)

        current = await self._read_document(container, doc_id, partition_key)
        if current is None:
            return None
        try:
            await self._with_retry(
                "delete_entry",
                lambda: container.delete_item(item=doc_id, partition_key=partition_key),
            )
        except CosmosResourceNotFoundError:
            return None
        except CosmosHttpResponseError as e:
            raise RemoteUnavailableError("delete_entry", e) from e
        return _document_to_entry(current)

    async def _query(self, operation: str, run_query: Callable[[], Any]) -> list[Any]:
        """Run a query to completion, retrying throttling like point operations.

        ``run_query`` must build a fresh iterator on every call.
        """

        async def drain() -> list[Any]:
            return [item async for item in run_query()]

        try:
            return await self._with_retry(operation, drain)
        except CosmosHttpResponseError as e:
            raise RemoteUnavailableError(operation, e) from e

    async def list_entries(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        list_filter: ListFilter,
        cursor: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ListResult[Entry]:
        container = self._get_container("list_entries")
        after = None
        if cursor is not None:
            after = decode_cursor(cursor, 2 if list_filter.order_by_value else 1)
        query, parameters = build_list_query(list_filter, after=after, limit=page_size + 1)

        docs = await self._query(
            "list_entries",
            lambda: container.query_items(
                query=query,
                parameters=parameters,
                partition_key=make_partition_key(store_name, scope, store_kind),
                max_item_count=page_size + 1,
            ),
        )

        entries = [_document_to_entry(d) for d in docs[:page_size]]
        next_cursor = None
        if len(docs) > page_size:
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
        """List distinct store names in ascending order.

        Cross-partition DISTINCT is neither ordered nor distinct across
        continuation pages, so every name past the cursor is read, then
        de-duplicated and sorted here.
        """
        container = self._get_container("list_store_names")
        conditions: list[str] = []
        parameters: list[dict[str, Any]] = []
        if prefix:
            conditions.append("STARTSWITH(c.storeName, @prefix)")
            parameters.append({"name": "@prefix", "value": prefix})
        if cursor is not None:
            (after,) = decode_cursor(cursor, 1)
            conditions.append("c.storeName > @after")
            parameters.append({"name": "@after", "value": after})
        query = "SELECT DISTINCT VALUE c.storeName FROM c"
        if conditions:
            query += f" WHERE {' AND '.join(conditions)}"

        found = await self._query(
            "list_store_names",
            lambda: container.query_items(query=query, parameters=parameters),
        )

        names = sorted(set(found))
        next_cursor = encode_cursor([names[page_size - 1]]) if len(names) > page_size else None
        return ListResult(items=names[:page_size], next_cursor=next_cursor)
