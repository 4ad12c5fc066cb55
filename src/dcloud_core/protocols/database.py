"""DatabaseServer protocol for the relational backend tenants live in."""

from pathlib import Path
from typing import Protocol, runtime_checkable


@runtime_checkable
class DatabaseServer(Protocol):
    """Protocol for tenant database servers (MySQL/MariaDB, SQLite)."""

    async def exists(self, name: str) -> bool:
        """Check whether a database exists."""
        ...

    async def list_databases(self, prefix: str = "") -> list[str]:
        """List database names starting with ``prefix``."""
        ...

    async def recreate(self, name: str) -> None:
        """Drop ``name`` if present, create it empty and grant the app user."""
        ...

    async def drop(self, name: str) -> None:
        """Drop a database. No-op if it does not exist."""
        ...

    async def dump(self, name: str, path: Path) -> None:
        """Write a plain SQL dump of ``name`` to ``path``."""
        ...

    async def load(self, name: str, path: Path) -> None:
        """Execute the SQL file at ``path`` against ``name``."""
        ...

    async def clone(self, source: str, target: str) -> None:
        """Stream ``source`` into the existing ``target`` without staging."""
        ...

    async def table_count(self, name: str) -> int:
        """Number of tables in a database."""
        ...

    async def size_mb(self, name: str) -> float:
        """Approximate data + index size in megabytes."""
        ...
