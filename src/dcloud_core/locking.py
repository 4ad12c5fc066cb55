"""Per-tenant advisory leases.

A lease is a KV entry with a TTL. Create, delete and migrate take the lease
for their tenant before preflight, so two invocations targeting the same
name cannot both pass preflight and race on the same directory or database.
An abandoned lease (killed process) frees itself when the TTL runs out.
"""

import json
import os
import socket
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from dcloud_core.exceptions import LockError
from dcloud_core.observability import get_logger
from dcloud_core.protocols.kv_store import KVStore

logger = get_logger(__name__)


@dataclass
class Lease:
    """A held tenant lease."""

    tenant: str
    owner: str
    operation: str
    acquired_at: float
    ttl: int

    def to_bytes(self) -> bytes:
        return json.dumps({
            "tenant": self.tenant,
            "owner": self.owner,
            "operation": self.operation,
            "acquired_at": self.acquired_at,
            "ttl": self.ttl,
        }).encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> "Lease | None":
        try:
            raw: dict[str, Any] = json.loads(data)
            return cls(**raw)
        except (ValueError, TypeError):
            return None


class TenantLockManager:
    """Hands out exclusive leases keyed by tenant name."""

    PREFIX = "lease:"

    def __init__(self, store: KVStore, ttl: int = 3600, owner: str | None = None) -> None:
        """Initialize the lock manager.

        Args:
            store: Backing KV store (FileKVStore for cross-process exclusion)
            ttl: Lease lifetime in seconds
            owner: Identifier written into leases (defaults to host:pid:random)
        """
        self.store = store
        self.ttl = ttl
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"

    def _key(self, tenant: str) -> str:
        return f"{self.PREFIX}{tenant}"

    async def acquire(self, tenant: str, operation: str) -> Lease:
        """Take the lease for ``tenant``.

        Raises:
            LockError: If another operation holds an unexpired lease
        """
        lease = Lease(
            tenant=tenant,
            owner=self.owner,
            operation=operation,
            acquired_at=time.time(),
            ttl=self.ttl,
        )
        if not await self.store.set_if_absent(self._key(tenant), lease.to_bytes(), ttl=self.ttl):
            holder = await self.holder(tenant)
            detail = f" by {holder.operation} ({holder.owner})" if holder else ""
            raise LockError(f"Tenant '{tenant}' is locked{detail}; retry when it completes")
        logger.debug("Lease acquired", context={"tenant": tenant, "operation": operation})
        return lease

    async def release(self, lease: Lease) -> None:
        """Release a lease this manager holds. Leases of other owners are left alone."""
        if not await self.store.delete_if_value(self._key(lease.tenant), lease.to_bytes()):
            logger.warning("Lease no longer held", context={"tenant": lease.tenant})
            return
        logger.debug("Lease released", context={"tenant": lease.tenant})

    async def holder(self, tenant: str) -> Lease | None:
        """Current lease for ``tenant``, if any."""
        data = await self.store.get(self._key(tenant))
        return Lease.from_bytes(data) if data else None

    @asynccontextmanager
    async def hold(self, tenant: str, operation: str) -> AsyncIterator[Lease]:
        """Hold the lease for the duration of a block."""
        lease = await self.acquire(tenant, operation)
        try:
            yield lease
        finally:
            await self.release(lease)
