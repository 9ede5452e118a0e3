"""
Shared test configuration and fixtures.

Provides an in-memory entry store, a service bound to it, and entry store
doubles that inject write conflicts or transport failures on demand.
"""

import asyncio
from typing import Any

import pytest

from datastore_service import DataStoreConfig, DataStoreService, MemoryEntryStore
from datastore_service.backends.base import Entry, StoreKind
from datastore_service.exceptions import RemoteUnavailableError


class ConflictingEntryStore(MemoryEntryStore):
    """
    Memory store where another writer sneaks in before conditional writes.

    For the first ``conflicts`` conditional upserts, an unconditional write
    of ``interfere(current_value)`` lands first, so the caller's expected
    version is stale and the store rejects it like a real race.
    """

    def __init__(self, conflicts: int = 0, interfere: Any = None):
        super().__init__()
        self.conflicts = conflicts
        self.interfere = interfere or (lambda value: (value or 0) + 1)
        self.conditional_attempts = 0

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
        if expected_version is not None:
            self.conditional_attempts += 1
            if self.conflicts > 0:
                self.conflicts -= 1
                current = await self.fetch_entry(store_name, scope, store_kind, key)
                await super().upsert_entry(
                    store_name,
                    scope,
                    store_kind,
                    key,
                    self.interfere(current.value if current else None),
                )
        return await super().upsert_entry(
            store_name, scope, store_kind, key, value, expected_version, metadata
        )


class FlakyEntryStore(MemoryEntryStore):
    """Memory store whose next ``failures`` fetches raise RemoteUnavailableError."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 0
        self.fetch_calls = 0

    async def fetch_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
    ) -> Entry | None:
        self.fetch_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise RemoteUnavailableError("fetch_entry", ConnectionError("connection reset"))
        return await super().fetch_entry(store_name, scope, store_kind, key)


class GatedEntryStore(MemoryEntryStore):
    """Memory store whose fetches wait on ``gate`` while it is set to an Event."""

    def __init__(self) -> None:
        super().__init__()
        self.gate: asyncio.Event | None = None
        self.fetch_started = asyncio.Event()

    async def fetch_entry(
        self,
        store_name: str,
        scope: str,
        store_kind: StoreKind,
        key: str,
    ) -> Entry | None:
        if self.gate is not None:
            self.fetch_started.set()
            await self.gate.wait()
        return await super().fetch_entry(store_name, scope, store_kind, key)


@pytest.fixture
def config() -> DataStoreConfig:
    """Config with no retry backoff and a poll interval tests never reach."""
    return DataStoreConfig(update_retry_delay=0.0, on_update_poll_interval=60.0)


@pytest.fixture
def entry_store() -> MemoryEntryStore:
    return MemoryEntryStore()


@pytest.fixture
async def service(entry_store, config):
    """Service over the shared in-memory entry store."""
    service = DataStoreService(entry_store, config)
    yield service
    await service.close()


@pytest.fixture
async def flaky_service(config):
    """Service over a FlakyEntryStore (exposed as service.entry_store)."""
    service = DataStoreService(FlakyEntryStore(), config)
    yield service
    await service.close()
