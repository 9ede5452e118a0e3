"""
Tests for standard data store handles.

Runs against the in-memory entry store; conflicts are injected with the
ConflictingEntryStore double from conftest.
"""

import asyncio

import pytest

from datastore_service import (
    ConcurrencyExhaustedError,
    DataStoreConfig,
    DataStoreService,
    InvalidValueTypeError,
    RemoteUnavailableError,
    SetOptions,
    ValidationError,
    VersionHistoryNotImplementedError,
)
from datastore_service.backends.base import DEFAULT_SCOPE, StoreKind

from conftest import ConflictingEntryStore


@pytest.fixture
def store(service):
    return service.get_data_store("PlayerData")


async def read_version(service, key, name="PlayerData", scope=DEFAULT_SCOPE):
    entry = await service.entry_store.fetch_entry(name, scope, StoreKind.STANDARD, key)
    return entry.version if entry else 0


class TestGetAndSet:
    """Tests for get, set and get_with_info."""

    @pytest.mark.asyncio
    async def test_get_absent_returns_none(self, store):
        """Reading a key that was never written yields None."""
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_set_then_get(self, store):
        """Structured values round-trip unchanged."""
        value = {"coins": 10, "items": ["sword", "shield"]}
        await store.set("player_1", value)
        assert await store.get("player_1") == value

    @pytest.mark.asyncio
    async def test_set_returns_previous_value(self, store):
        """set returns what was stored before the write."""
        assert await store.set("k", "first") is None
        assert await store.set("k", "second") == "first"
        assert await store.get("k") == "second"

    @pytest.mark.asyncio
    async def test_set_bumps_version(self, service, store):
        """Each write increments the entry version by one."""
        await store.set("k", 1)
        await store.set("k", 2)
        await store.set("k", 3)
        assert await read_version(service, "k") == 3

    @pytest.mark.asyncio
    async def test_set_none_rejected(self, store):
        """None is not a storable value."""
        with pytest.raises(ValidationError):
            await store.set("k", None)

    @pytest.mark.asyncio
    async def test_set_unserializable_rejected(self, store):
        """Values must be JSON-compatible."""
        with pytest.raises(ValidationError):
            await store.set("k", object())
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_returned_value_is_detached(self, store):
        """Mutating a fetched value does not change the stored one."""
        await store.set("k", {"items": [1]})
        value = await store.get("k")
        value["items"].append(2)
        assert await store.get("k") == {"items": [1]}

    @pytest.mark.asyncio
    async def test_get_with_info(self, store):
        """Metadata and timestamps are exposed, and metadata survives plain sets."""
        await store.set("k", "v1", SetOptions(metadata={"source": "shop"}))
        await store.set("k", "v2")

        value, info = await store.get_with_info("k")
        assert value == "v2"
        assert info.metadata == {"source": "shop"}
        assert info.updated_at >= info.created_at
        assert not hasattr(info, "version")

    @pytest.mark.asyncio
    async def test_get_with_info_absent(self, store):
        """Absent keys yield (None, None)."""
        assert await store.get_with_info("missing") == (None, None)

    @pytest.mark.asyncio
    async def test_scopes_are_isolated(self, service):
        """The same key in two scopes holds independent values."""
        a = service.get_data_store("Inventory", scope="player_a")
        b = service.get_data_store("Inventory", scope="player_b")
        await a.set("gold", 5)
        assert await b.get("gold") is None

    @pytest.mark.asyncio
    async def test_transport_failure_propagates(self, flaky_service):
        """Reads surface RemoteUnavailableError and recover afterwards."""
        store = flaky_service.get_data_store("PlayerData")
        await store.set("k", 1)
        flaky_service.entry_store.failures = 1

        with pytest.raises(RemoteUnavailableError):
            await store.get("k")
        assert await store.get("k") == 1


class TestKeyValidation:
    """Tests for key validation."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", "x" * 51, 42, None])
    async def test_invalid_keys_rejected(self, store, key):
        """Empty, over-long or non-string keys fail validation."""
        with pytest.raises(ValidationError):
            await store.get(key)

    @pytest.mark.asyncio
    async def test_max_length_key_accepted(self, store):
        """A 50 character key is allowed."""
        key = "k" * 50
        await store.set(key, True)
        assert await store.get(key) is True


class TestUpdate:
    """Tests for the atomic read-modify-write path."""

    @pytest.mark.asyncio
    async def test_update_applies_transform(self, service, store):
        """Result is f(previous) and the version moves by exactly one."""
        await store.set("k", 4)
        result = await store.update("k", lambda v: v * 10)
        assert result == 40
        assert await store.get("k") == 40
        assert await read_version(service, "k") == 2

    @pytest.mark.asyncio
    async def test_update_absent_key_receives_none(self, store):
        """The transform sees None for a key that does not exist."""
        seen = []

        def transform(current):
            seen.append(current)
            return ["first"]

        assert await store.update("new", transform) == ["first"]
        assert seen == [None]

    @pytest.mark.asyncio
    async def test_update_cancelled_by_none(self, service, store):
        """Returning None aborts without writing."""
        await store.set("k", "keep")
        assert await store.update("k", lambda v: None) is None
        assert await store.get("k") == "keep"
        assert await read_version(service, "k") == 1

    @pytest.mark.asyncio
    async def test_update_async_transform(self, store):
        """Coroutine transforms are awaited."""

        async def transform(current):
            return (current or 0) + 1

        assert await store.update("k", transform) == 1

    @pytest.mark.asyncio
    async def test_update_retries_after_conflict(self, config):
        """A losing attempt is retried from a fresh read."""
        entry_store = ConflictingEntryStore(conflicts=2)
        service = DataStoreService(entry_store, config)
        store = service.get_data_store("Counters")
        await store.set("k", 0)

        result = await store.update("k", lambda v: v + 10)

        # The other writer moved the value 0 -> 1 -> 2 before we committed
        assert result == 12
        assert entry_store.conditional_attempts == 3
        entry = await entry_store.fetch_entry("Counters", DEFAULT_SCOPE, StoreKind.STANDARD, "k")
        assert entry.version == 4
        await service.close()

    @pytest.mark.asyncio
    async def test_update_succeeds_on_last_retry(self):
        """Conflicts equal to update_retries still commit."""
        config = DataStoreConfig(update_retries=2, update_retry_delay=0.0)
        service = DataStoreService(ConflictingEntryStore(conflicts=2), config)
        store = service.get_data_store("Counters")

        assert await store.update("k", lambda v: "mine") == "mine"
        await service.close()

    @pytest.mark.asyncio
    async def test_update_exhausts_retries(self):
        """More conflicts than retries raises ConcurrencyExhaustedError."""
        config = DataStoreConfig(update_retries=2, update_retry_delay=0.0)
        entry_store = ConflictingEntryStore(conflicts=3)
        service = DataStoreService(entry_store, config)
        store = service.get_data_store("Counters")

        with pytest.raises(ConcurrencyExhaustedError) as exc_info:
            await store.update("k", lambda v: "mine")

        assert exc_info.value.attempts == 3
        assert entry_store.conditional_attempts == 3
        # Only the interfering writes landed
        assert await store.get("k") == 3
        await service.close()

    @pytest.mark.asyncio
    async def test_concurrent_updates_both_apply(self, service, store):
        """Two racing increments through update both take effect."""
        calls = 0

        async def add_one(current):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            return (current or 0) + 1

        await asyncio.gather(store.update("k", add_one), store.update("k", add_one))

        assert await store.get("k") == 2
        assert await read_version(service, "k") == 2
        # One side lost the first race and re-ran its transform
        assert calls == 3

    @pytest.mark.asyncio
    async def test_retry_delay_is_capped(self):
        """Backoff doubles per attempt up to update_retry_max_delay."""
        config = DataStoreConfig(update_retry_delay=0.1, update_retry_max_delay=0.3)
        service = DataStoreService(ConflictingEntryStore(), config)
        store = service.get_data_store("Counters")

        assert store._retry_delay(0) == pytest.approx(0.1)
        assert store._retry_delay(1) == pytest.approx(0.2)
        assert store._retry_delay(5) == pytest.approx(0.3)
        await service.close()


class TestIncrement:
    """Tests for increment."""

    @pytest.mark.asyncio
    async def test_increment_absent_starts_at_zero(self, store):
        """An absent key counts as 0."""
        assert await store.increment("coins", 5) == 5

    @pytest.mark.asyncio
    async def test_increment_existing(self, store):
        """Delta is added to the stored number."""
        await store.set("coins", 10)
        assert await store.increment("coins", 5) == 15
        assert await store.increment("coins") == 16

    @pytest.mark.asyncio
    async def test_increment_float(self, store):
        """Float deltas are supported."""
        await store.set("ratio", 1.5)
        assert await store.increment("ratio", 0.25) == pytest.approx(1.75)

    @pytest.mark.asyncio
    async def test_increment_non_numeric_value(self, store):
        """A non-numeric stored value is rejected and left unchanged."""
        await store.set("name", "abc")
        with pytest.raises(InvalidValueTypeError):
            await store.increment("name", 1)
        assert await store.get("name") == "abc"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("delta", ["1", True, float("nan"), None])
    async def test_increment_non_numeric_delta(self, store, delta):
        """Deltas must be finite numbers."""
        with pytest.raises(InvalidValueTypeError):
            await store.increment("coins", delta)

    @pytest.mark.asyncio
    async def test_invalid_value_type_is_type_error(self, store):
        """InvalidValueTypeError can be caught as TypeError."""
        await store.set("name", "abc")
        with pytest.raises(TypeError):
            await store.increment("name")


class TestRemove:
    """Tests for remove."""

    @pytest.mark.asyncio
    async def test_remove_returns_previous(self, store):
        """remove returns the value stored before deletion."""
        await store.set("k", {"a": 1})
        assert await store.remove("k") == {"a": 1}
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_remove_absent(self, store):
        """Removing an absent key returns None."""
        assert await store.remove("missing") is None

    @pytest.mark.asyncio
    async def test_version_restarts_after_remove(self, service, store):
        """A removed key is written fresh at version 1."""
        await store.set("k", 1)
        await store.set("k", 2)
        await store.remove("k")

        assert await read_version(service, "k") == 0
        await store.update("k", lambda v: "again")
        assert await read_version(service, "k") == 1


class TestListKeys:
    """Tests for list_keys."""

    @pytest.mark.asyncio
    async def test_keys_ascending(self, store):
        """Keys come back sorted."""
        for key in ("b", "c", "a"):
            await store.set(key, 1)
        pages = await store.list_keys()
        await pages.advance_to_next_page()
        assert [k.key for k in pages.get_current_page()] == ["a", "b", "c"]
        assert pages.is_finished

    @pytest.mark.asyncio
    async def test_prefix_filter(self, store):
        """Only keys with the prefix are listed."""
        for key in ("player_1", "player_2", "guild_1"):
            await store.set(key, 1)
        pages = await store.list_keys(prefix="player_")
        await pages.advance_to_next_page()
        assert [k.key for k in pages.get_current_page()] == ["player_1", "player_2"]

    @pytest.mark.asyncio
    async def test_resume_from_cursor(self, store):
        """A saved cursor resumes the listing in a new pages object."""
        for i in range(5):
            await store.set(f"k{i}", i)

        first = await store.list_keys(page_size=2)
        await first.advance_to_next_page()
        resumed = await store.list_keys(page_size=2, cursor=first.cursor)
        await resumed.advance_to_next_page()

        assert [k.key for k in first.get_current_page()] == ["k0", "k1"]
        assert [k.key for k in resumed.get_current_page()] == ["k2", "k3"]

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        """An empty listing is finished immediately."""
        pages = await store.list_keys()
        await pages.advance_to_next_page()
        assert pages.get_current_page() == []
        assert pages.is_finished


class TestVersionHistory:
    """The version-history family is not supported."""

    @pytest.mark.asyncio
    async def test_get_version(self, store):
        with pytest.raises(VersionHistoryNotImplementedError):
            await store.get_version("k", "1")

    @pytest.mark.asyncio
    async def test_get_version_at_time(self, store):
        with pytest.raises(VersionHistoryNotImplementedError):
            await store.get_version_at_time("k", 0.0)

    @pytest.mark.asyncio
    async def test_list_versions(self, store):
        with pytest.raises(VersionHistoryNotImplementedError):
            await store.list_versions("k")

    @pytest.mark.asyncio
    async def test_remove_version(self, store):
        """Also catchable as NotImplementedError."""
        with pytest.raises(NotImplementedError):
            await store.remove_version("k", "1")
