"""On-disk key-value storage.

One JSON file per key. ``set_if_absent`` relies on ``O_CREAT | O_EXCL`` so
two processes on the same host cannot both win a key.
"""

import asyncio
import base64
import contextlib
import json
import os
import time
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote


class FileKVStore:
    """Key-value store backed by a directory of JSON files."""

    STALE_PARTIAL_SECONDS = 60

    def __init__(self, path: str | Path, **kwargs: Any) -> None:
        """Initialize file KV store.

        Args:
            path: Directory to keep entries in (created if missing)
            **kwargs: Ignored (for compatibility with other backends)
        """
        self.path = Path(path)
        self.path.mkdir(parents=True, exist_ok=True)

    def _file(self, key: str) -> Path:
        return self.path / (quote(key, safe="") + ".json")

    @staticmethod
    def _encode(value: bytes, ttl: int | None) -> bytes:
        return json.dumps({
            "value": base64.b64encode(value).decode(),
            "expires_at": time.time() + ttl if ttl else None,
        }).encode()

    def _read(self, path: Path) -> bytes | None:
        try:
            data = json.loads(path.read_bytes())
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            # Being written right now, or left half-written by a crashed writer
            try:
                age = time.time() - path.stat().st_mtime
            except FileNotFoundError:
                return None
            if age < self.STALE_PARTIAL_SECONDS:
                return b""
            path.unlink(missing_ok=True)
            return None
        expires_at = data.get("expires_at")
        if expires_at is not None and time.time() > expires_at:
            path.unlink(missing_ok=True)
            return None
        return base64.b64decode(data["value"])

    async def get(self, key: str) -> bytes | None:
        """Get a value by key."""
        return await asyncio.to_thread(self._read, self._file(key))

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> None:
        """Set a value with optional TTL in seconds."""
        path = self._file(key)
        tmp = path.with_suffix(f".{os.getpid()}.tmp")
        tmp.write_bytes(self._encode(value, ttl))
        os.replace(tmp, path)

    async def set_if_absent(self, key: str, value: bytes, ttl: int | None = None) -> bool:
        """Set a value only if the key is missing or expired."""
        path = self._file(key)

        def _create() -> bool:
            # Expired entries are removed by _read
            if self._read(path) is not None:
                return False
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                return False
            with os.fdopen(fd, "wb") as f:
                f.write(self._encode(value, ttl))
            return True

        return await asyncio.to_thread(_create)

    async def delete(self, key: str) -> None:
        """Delete a key."""
        self._file(key).unlink(missing_ok=True)

    async def delete_if_value(self, key: str, expected: bytes) -> bool:
        """Delete ``key`` only while it still holds ``expected``.

        The entry is first renamed aside so a concurrent writer never sees
        it half-removed; a foreign value is linked back unless the key was
        taken again in the meantime.
        """
        path = self._file(key)
        claim = path.with_suffix(f".{os.getpid()}.claim")

        def _claim() -> bool:
            try:
                os.rename(path, claim)
            except FileNotFoundError:
                return False
            if self._read(claim) == expected:
                claim.unlink(missing_ok=True)
                return True
            # Expired claims were already removed by _read
            with contextlib.suppress(FileExistsError, FileNotFoundError):
                os.link(claim, path)
            claim.unlink(missing_ok=True)
            return False

        return await asyncio.to_thread(_claim)

    async def list(self, prefix: str) -> list[str]:
        """List keys matching a prefix."""
        keys = []
        for path in self.path.glob("*.json"):
            key = unquote(path.name[: -len(".json")])
            if key.startswith(prefix) and self._read(path) is not None:
                keys.append(key)
        return sorted(keys)
