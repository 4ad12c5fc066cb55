"""Tests for per-tenant leases."""

import asyncio

import pytest

from dcloud_core.backends.kv.file import FileKVStore
from dcloud_core.exceptions import LockError
from dcloud_core.locking import Lease, TenantLockManager


@pytest.fixture
def locks(kv_store):
    return TenantLockManager(kv_store, ttl=60, owner="host:1")


class TestTenantLockManager:
    """Tests for TenantLockManager."""

    async def test_hold_releases_on_exit(self, locks):
        async with locks.hold("acme", "create") as lease:
            assert lease.owner == "host:1"
            assert (await locks.holder("acme")).operation == "create"
        assert await locks.holder("acme") is None

    async def test_second_acquire_fails_with_holder(self, locks, kv_store):
        other = TenantLockManager(kv_store, owner="host:2")
        async with locks.hold("acme", "migrate"):
            with pytest.raises(LockError, match=r"locked by migrate \(host:1\)"):
                await other.acquire("acme", "delete")

    async def test_other_tenants_unaffected(self, locks):
        async with locks.hold("acme", "create"):
            async with locks.hold("beta", "create"):
                pass

    async def test_released_on_error(self, locks):
        with pytest.raises(RuntimeError):
            async with locks.hold("acme", "create"):
                raise RuntimeError("boom")
        assert await locks.holder("acme") is None

    async def test_release_leaves_foreign_lease(self, locks, kv_store):
        lease = await locks.acquire("acme", "create")
        await kv_store.delete("lease:acme")
        other = TenantLockManager(kv_store, owner="host:2")
        await other.acquire("acme", "delete")

        await locks.release(lease)

        assert (await locks.holder("acme")).owner == "host:2"

    async def test_concurrent_acquire_single_winner(self, tmp_path):
        """Across processes the file store arbitrates: one winner."""
        managers = [TenantLockManager(FileKVStore(tmp_path), owner=f"host:{i}") for i in range(4)]
        results = await asyncio.gather(
            *(m.acquire("acme", "create") for m in managers), return_exceptions=True
        )
        assert sum(isinstance(r, Lease) for r in results) == 1
        assert sum(isinstance(r, LockError) for r in results) == 3

    def test_lease_from_garbage(self):
        assert Lease.from_bytes(b"not json") is None
