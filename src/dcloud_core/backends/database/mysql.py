"""MySQL/MariaDB database server backend.

Talks to the server through the ``mysql``/``mysqldump`` client binaries so
dumps and restores stream through pipes instead of Python memory.
"""

from pathlib import Path
from typing import Any

from dcloud_core.config import DatabaseConfig
from dcloud_core.observability import get_logger
from dcloud_core.protocols.runner import CommandRunner

logger = get_logger(__name__)


def quote_identifier(name: str) -> str:
    """Backtick-quote a database name."""
    if "`" in name or not name:
        raise ValueError(f"Unsafe database identifier: {name!r}")
    return f"`{name}`"


def quote_literal(value: str) -> str:
    """Single-quote a SQL string literal."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class MySQLServer:
    """Database server reached through the MySQL command-line clients."""

    def __init__(self, config: DatabaseConfig, runner: CommandRunner, **kwargs: Any) -> None:
        """Initialize the backend.

        Args:
            config: Database section of the configuration
            runner: Command runner used to invoke the clients
            **kwargs: Ignored (for compatibility with other backends)
        """
        self.config = config
        self.runner = runner

    @property
    def _env(self) -> dict[str, str]:
        # Keeps the password off the process list
        if self.config.root_password:
            return {"MYSQL_PWD": self.config.root_password}
        return {}

    def _connection_args(self) -> list[str]:
        return [
            "-h", self.config.host,
            "-P", str(self.config.port),
            "-u", self.config.root_user,
        ]

    def client_command(self, database: str | None = None) -> list[str]:
        """``mysql`` invocation, optionally bound to a database."""
        cmd = [self.config.mysql_binary, *self._connection_args()]
        if database:
            cmd.append(database)
        return cmd

    def dump_command(self, database: str) -> list[str]:
        """``mysqldump`` invocation for a consistent, streaming dump."""
        return [
            self.config.mysqldump_binary,
            *self._connection_args(),
            "--single-transaction",
            "--quick",
            "--routines",
            "--triggers",
            database,
        ]

    async def query(self, sql: str, database: str | None = None) -> str:
        """Run SQL and return tab-separated output without column headers."""
        cmd = [*self.client_command(database), "-N", "-B", "-e", sql]
        result = await self.runner.run(cmd, env=self._env, timeout=self.config.timeout_seconds)
        return result.check().stdout

    async def exists(self, name: str) -> bool:
        """Check whether a database exists."""
        output = await self.query(
            "SELECT SCHEMA_NAME FROM information_schema.SCHEMATA "
            f"WHERE SCHEMA_NAME = {quote_literal(name)}"
        )
        return output.strip() == name

    async def list_databases(self, prefix: str = "") -> list[str]:
        """List database names starting with ``prefix``."""
        output = await self.query("SHOW DATABASES")
        return sorted(line.strip() for line in output.splitlines() if line.strip().startswith(prefix))

    async def recreate(self, name: str) -> None:
        """Drop ``name`` if present, create it empty and grant the app user."""
        ident = quote_identifier(name)
        grantee = f"{quote_literal(self.config.app_user)}@{quote_literal(self.config.app_host)}"
        logger.info("Dropping and recreating database", context={"database": name})
        await self.query(
            f"DROP DATABASE IF EXISTS {ident}; "
            f"CREATE DATABASE {ident} CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci; "
            f"GRANT ALL PRIVILEGES ON {ident}.* TO {grantee}; "
            "FLUSH PRIVILEGES;"
        )

    async def drop(self, name: str) -> None:
        """Drop a database. No-op if it does not exist."""
        logger.info("Dropping database", context={"database": name})
        await self.query(f"DROP DATABASE IF EXISTS {quote_identifier(name)}")

    async def dump(self, name: str, path: Path) -> None:
        """Write a plain SQL dump of ``name`` to ``path``."""
        result = await self.runner.run(
            self.dump_command(name),
            stdout_path=path,
            env=self._env,
            timeout=self.config.timeout_seconds,
        )
        result.check()

    async def load(self, name: str, path: Path) -> None:
        """Execute the SQL file at ``path`` against ``name``."""
        result = await self.runner.run(
            self.client_command(name),
            stdin_path=path,
            env=self._env,
            timeout=self.config.timeout_seconds,
        )
        result.check()

    async def clone(self, source: str, target: str) -> None:
        """Stream ``mysqldump source | mysql target``."""
        result = await self.runner.pipe(
            self.dump_command(source),
            self.client_command(target),
            env=self._env,
            timeout=self.config.timeout_seconds,
        )
        result.check()

    async def table_count(self, name: str) -> int:
        """Number of tables in a database."""
        output = await self.query(
            "SELECT COUNT(*) FROM information_schema.tables "
            f"WHERE table_schema = {quote_literal(name)}"
        )
        return int(output.strip() or 0)

    async def size_mb(self, name: str) -> float:
        """Approximate data + index size in megabytes."""
        output = await self.query(
            "SELECT ROUND(SUM(data_length + index_length) / 1024 / 1024, 2) "
            f"FROM information_schema.tables WHERE table_schema = {quote_literal(name)}"
        )
        value = output.strip()
        return float(value) if value and value != "NULL" else 0.0
