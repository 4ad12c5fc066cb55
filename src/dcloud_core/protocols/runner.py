"""CommandRunner protocol for invoking external tools."""

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from dcloud_core.exceptions import CommandError


@dataclass
class CommandResult:
    """Result of running an external command."""

    args: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_ms: float = field(default=0.0, compare=False)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def check(self) -> "CommandResult":
        """Raise CommandError unless the command succeeded."""
        if not self.ok:
            stderr = self.stderr
            if self.timed_out:
                stderr = (stderr + "\ntimed out").strip()
            raise CommandError(self.args, self.exit_code, stderr)
        return self


@runtime_checkable
class CommandRunner(Protocol):
    """Protocol for running commands (local subprocess, recorded fakes)."""

    async def run(
        self,
        args: Sequence[str],
        *,
        input: bytes | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a command and collect its output.

        ``stdin_path``/``stdout_path`` stream from/to files instead of
        buffering in memory. A non-zero exit does not raise; call
        ``CommandResult.check()``.
        """
        ...

    async def pipe(
        self,
        producer: Sequence[str],
        consumer: Sequence[str],
        *,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Stream ``producer`` stdout into ``consumer`` stdin (``a | b``).

        The result fails if either side fails.
        """
        ...
