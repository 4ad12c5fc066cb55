"""In-process key-value store."""

import asyncio
import time
from collections.abc import Callable
from typing import Any


class MemoryKVStore:
    """Dictionary-backed store.

    Leases taken here are invisible to other processes, so this backend
    only suits tests and single invocations.
    """

    def __init__(self, clock: Callable[[], float] = time.time, **kwargs: Any) -> None:
        self._entries: dict[str, tuple[bytes, float | None]] = {}
        self._guard = asyncio.Lock()
        self._clock = clock

    def _live(self, key: str) -> bytes | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def _put(self, key: str, value: bytes, ttl: int | None) -> None:
        self._entries[key] = (value, self._clock() + ttl if ttl else None)

    async def get(self, key: str) -> bytes | None:
        async with self._guard:
            return self._live(key)

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None:
        async with self._guard:
            self._put(key, value, ttl)

    async def set_if_absent(self, key: str, value: bytes, ttl: int | None = None) -> bool:
        async with self._guard:
            if self._live(key) is not None:
                return False
            self._put(key, value, ttl)
            return True

    async def delete(self, key: str) -> None:
        async with self._guard:
            self._entries.pop(key, None)

    async def delete_if_value(self, key: str, expected: bytes) -> bool:
        async with self._guard:
            if self._live(key) != expected:
                return False
            del self._entries[key]
            return True

    async def list(self, prefix: str) -> list[str]:
        async with self._guard:
            return sorted(k for k in list(self._entries) if k.startswith(prefix) and self._live(k) is not None)
