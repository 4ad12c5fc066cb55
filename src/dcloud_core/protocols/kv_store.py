"""KVStore protocol: the small key-value surface tenant leases need."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class KVStore(Protocol):
    """Key-value backend holding expiring entries (memory, on-disk).

    Implementations treat an expired entry exactly like a missing one.
    """

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None: ...

    async def set_if_absent(self, key: str, value: bytes, ttl: int | None = None) -> bool:
        """Write ``value`` only if ``key`` is missing or expired. True if written."""
        ...

    async def delete(self, key: str) -> None: ...

    async def delete_if_value(self, key: str, expected: bytes) -> bool:
        """Delete ``key`` only while it still holds ``expected``. True if deleted."""
        ...

    async def list(self, prefix: str) -> list[str]:
        """Live keys starting with ``prefix``."""
        ...
