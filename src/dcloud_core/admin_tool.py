"""Wrapper around the administrative command-line tool (Drush).

The same wrapper serves every tier: on the shared host it runs Drush
directly with ``--uri``; for remote tiers a command prefix (``ssh host`` or
``upsun ssh -p <project> --``) is prepended and the Drush invocation is
passed as one shell string.
"""

import shlex
from pathlib import Path

from dcloud_core.observability import get_logger
from dcloud_core.protocols.runner import CommandResult, CommandRunner

logger = get_logger(__name__)

_READ_SECRET = "IFS= read -r secret"


class AdminTool:
    """Runs Drush commands against one tenant instance."""

    def __init__(
        self,
        runner: CommandRunner,
        executable: str = "drush",
        *,
        uri: str | None = None,
        cwd: Path | None = None,
        prefix: list[str] | None = None,
        remote_cwd: str | None = None,
        timeout: float = 300,
    ) -> None:
        """Initialize the wrapper.

        Args:
            runner: Command runner
            executable: Drush binary (path relative to ``cwd`` or remote cwd)
            uri: Instance URI passed as ``--uri``
            cwd: Local working directory (project root on the shared host)
            prefix: Remote shell prefix; when set the command runs remotely
            remote_cwd: Directory to ``cd`` into on the remote side
            timeout: Default timeout per command in seconds
        """
        self.runner = runner
        self.executable = executable
        self.uri = uri
        self.cwd = cwd
        self.prefix = prefix
        self.remote_cwd = remote_cwd
        self.timeout = timeout

    def command(self, *args: str) -> list[str]:
        """Full argv for a Drush invocation."""
        drush = [self.executable]
        if self.uri:
            drush.append(f"--uri={self.uri}")
        drush.extend(args)
        if not self.prefix:
            return drush
        remote = shlex.join(drush)
        if self.remote_cwd:
            remote = f"cd {shlex.quote(self.remote_cwd)} && {remote}"
        return [*self.prefix, remote]

    def stdin_command(self, *args: str) -> list[str]:
        """Argv whose last Drush argument is read from the first stdin line.

        Keeps secret arguments out of the process table and the command log.
        """
        drush = [self.executable]
        if self.uri:
            drush.append(f"--uri={self.uri}")
        drush.extend(args)
        if not self.prefix:
            return ["sh", "-c", _READ_SECRET + ' && exec "$0" "$@" "$secret"', *drush]
        remote = f'{_READ_SECRET} && {shlex.join(drush)} "$secret"'
        if self.remote_cwd:
            remote = f"cd {shlex.quote(self.remote_cwd)} && {remote}"
        return [*self.prefix, remote]

    async def run(self, *args: str, timeout: float | None = None, input: bytes | None = None) -> CommandResult:
        """Run a Drush command. Does not raise on failure."""
        return await self.runner.run(
            self.command(*args),
            cwd=self.cwd if not self.prefix else None,
            timeout=timeout or self.timeout,
            input=input,
        )

    async def run_or_warn(self, *args: str, timeout: float | None = None) -> bool:
        """Run a command whose failure only deserves a warning."""
        result = await self.run(*args, timeout=timeout)
        if not result.ok:
            logger.warning(
                f"drush {args[0]} failed (non-fatal)",
                context={"exit_code": result.exit_code, "stderr": result.stderr.strip()[-500:]},
            )
            return False
        logger.info(f"drush {args[0]} completed")
        return True

    async def cache_rebuild(self, timeout: float | None = None) -> bool:
        return await self.run_or_warn("cache:rebuild", timeout=timeout)

    async def update_database(self) -> bool:
        return await self.run_or_warn("updatedb", "-y")

    async def set_password(self, user: str, password: str) -> bool:
        """Set a user account's password. The password travels on stdin."""
        result = await self.runner.run(
            self.stdin_command("user:password", user),
            cwd=self.cwd if not self.prefix else None,
            timeout=self.timeout,
            input=f"{password}\n".encode(),
        )
        if not result.ok:
            logger.warning(f"Could not set password for '{user}'", context={"exit_code": result.exit_code})
            return False
        return True

    async def status_field(self, field: str, timeout: float | None = 30) -> str | None:
        """Single ``drush status`` field, or None if Drush fails."""
        result = await self.run("status", f"--field={field}", timeout=timeout)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def bootstrap_ok(self) -> bool:
        """Whether the instance bootstraps (``status --field=bootstrap``)."""
        value = await self.status_field("bootstrap")
        return bool(value) and "successful" in value.lower()

    async def sql_query(self, sql: str) -> CommandResult:
        """Run SQL through ``sql:cli`` so statements never appear in argv."""
        return await self.run("sql:cli", input=sql.encode())
