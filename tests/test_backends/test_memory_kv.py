"""Tests for the in-memory KV store."""

import pytest

from dcloud_core.backends.kv.memory import MemoryKVStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store(clock):
    return MemoryKVStore(clock=clock)


class TestMemoryKVStore:
    """Tests for MemoryKVStore."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, kv_store):
        await kv_store.set("lease:acme", b"value")
        assert await kv_store.get("lease:acme") == b"value"
        assert await kv_store.get("lease:other") is None

    @pytest.mark.asyncio
    async def test_delete_missing_key(self, kv_store):
        """Deleting a missing key does not raise."""
        await kv_store.delete("nonexistent")

    @pytest.mark.asyncio
    async def test_list_by_prefix(self, kv_store):
        await kv_store.set("lease:beta", b"2")
        await kv_store.set("lease:acme", b"1")
        await kv_store.set("other:gamma", b"3")

        assert await kv_store.list("lease:") == ["lease:acme", "lease:beta"]

    @pytest.mark.asyncio
    async def test_set_if_absent(self, kv_store):
        """Only the first writer wins a key."""
        assert await kv_store.set_if_absent("lease:acme", b"first")
        assert not await kv_store.set_if_absent("lease:acme", b"second")
        assert await kv_store.get("lease:acme") == b"first"

    @pytest.mark.asyncio
    async def test_expired_entry_behaves_as_missing(self, kv_store, clock):
        await kv_store.set("lease:acme", b"old", ttl=60)
        clock.now += 59
        assert await kv_store.get("lease:acme") == b"old"

        clock.now += 1
        assert await kv_store.get("lease:acme") is None
        assert await kv_store.list("lease:") == []
        assert await kv_store.set_if_absent("lease:acme", b"new")

    @pytest.mark.asyncio
    async def test_delete_if_value(self, kv_store):
        """Compare-and-delete only removes the expected value."""
        await kv_store.set("lease:acme", b"mine")

        assert not await kv_store.delete_if_value("lease:acme", b"theirs")
        assert await kv_store.get("lease:acme") == b"mine"
        assert await kv_store.delete_if_value("lease:acme", b"mine")
        assert await kv_store.get("lease:acme") is None
        assert not await kv_store.delete_if_value("lease:acme", b"mine")
