"""SQLite database server backend.

Each tenant database is one file under a directory. Suitable for
development and for exercising clone/backup paths without a MySQL server.
"""

import asyncio
import sqlite3
from pathlib import Path
from typing import Any

from dcloud_core.observability import get_logger

logger = get_logger(__name__)


class SQLiteServer:
    """File-per-database SQLite backend."""

    SUFFIX = ".sqlite3"

    def __init__(self, path: str | Path | None = None, **kwargs: Any) -> None:
        """Initialize SQLite server.

        Args:
            path: Directory holding the database files. Defaults to ./data/databases
            **kwargs: Ignored (for compatibility with other backends)
        """
        self.path = Path(path) if path else Path("./data/databases")
        self.path.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _file(self, name: str) -> Path:
        if "/" in name or name.startswith("."):
            raise ValueError(f"Unsafe database identifier: {name!r}")
        return self.path / f"{name}{self.SUFFIX}"

    def connect(self, name: str) -> sqlite3.Connection:
        """Open a connection to an existing database."""
        return sqlite3.connect(self._file(name))

    async def exists(self, name: str) -> bool:
        """Check whether a database exists."""
        return self._file(name).exists()

    async def list_databases(self, prefix: str = "") -> list[str]:
        """List database names starting with ``prefix``."""
        names = [p.name[: -len(self.SUFFIX)] for p in self.path.glob(f"*{self.SUFFIX}")]
        return sorted(n for n in names if n.startswith(prefix))

    async def recreate(self, name: str) -> None:
        """Drop ``name`` if present and create it empty."""
        logger.info("Dropping and recreating database", context={"database": name})
        async with self._lock:
            path = self._file(name)
            path.unlink(missing_ok=True)
            path.touch()

    async def drop(self, name: str) -> None:
        """Drop a database. No-op if it does not exist."""
        logger.info("Dropping database", context={"database": name})
        async with self._lock:
            self._file(name).unlink(missing_ok=True)

    async def dump(self, name: str, path: Path) -> None:
        """Write a plain SQL dump of ``name`` to ``path``."""
        def _dump() -> None:
            conn = self.connect(name)
            try:
                with Path(path).open("w") as f:
                    for line in conn.iterdump():
                        f.write(f"{line}\n")
            finally:
                conn.close()

        async with self._lock:
            await asyncio.to_thread(_dump)

    async def load(self, name: str, path: Path) -> None:
        """Execute the SQL file at ``path`` against ``name``."""
        def _load() -> None:
            conn = self.connect(name)
            try:
                conn.executescript(Path(path).read_text())
                conn.commit()
            finally:
                conn.close()

        async with self._lock:
            await asyncio.to_thread(_load)

    async def clone(self, source: str, target: str) -> None:
        """Copy ``source`` into ``target`` page by page."""
        def _clone() -> None:
            src = self.connect(source)
            dst = self.connect(target)
            try:
                src.backup(dst)
            finally:
                src.close()
                dst.close()

        async with self._lock:
            await asyncio.to_thread(_clone)

    async def table_count(self, name: str) -> int:
        """Number of tables in a database."""
        if not self._file(name).exists():
            return 0
        conn = self.connect(name)
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
            ).fetchone()
            return int(row[0])
        finally:
            conn.close()

    async def size_mb(self, name: str) -> float:
        """Database file size in megabytes."""
        path = self._file(name)
        if not path.exists():
            return 0.0
        return round(path.stat().st_size / 1024 / 1024, 2)
