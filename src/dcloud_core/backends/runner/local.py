"""Local subprocess command runner."""

import asyncio
import os
from collections.abc import Sequence
from contextlib import ExitStack
from pathlib import Path
from typing import Any

from dcloud_core.observability import Timer, get_logger
from dcloud_core.protocols.runner import CommandResult

logger = get_logger(__name__)

# Arguments following these flags are never logged
_SECRET_FLAGS = ("--password", "--value")


def redact(args: Sequence[str]) -> list[str]:
    """Copy of ``args`` safe to put in a log line."""
    redacted: list[str] = []
    hide_next = False
    for arg in args:
        if hide_next:
            redacted.append("***")
            hide_next = False
        elif arg in _SECRET_FLAGS:
            redacted.append(arg)
            hide_next = True
        elif arg.startswith(tuple(f"{flag}=" for flag in _SECRET_FLAGS)):
            redacted.append(arg.split("=", 1)[0] + "=***")
        else:
            redacted.append(arg)
    return redacted


class LocalCommandRunner:
    """Runs commands as asyncio subprocesses on this host."""

    def __init__(
        self,
        default_timeout: float | None = None,
        env: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the runner.

        Args:
            default_timeout: Timeout applied when a call passes none
            env: Variables added to every command's environment
            **kwargs: Ignored (for compatibility with other runners)
        """
        self._default_timeout = default_timeout
        self._env = env or {}

    def _environ(self, env: dict[str, str] | None) -> dict[str, str]:
        merged = dict(os.environ)
        merged.update(self._env)
        if env:
            merged.update(env)
        return merged

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
        """Run a command and collect its output."""
        args = [str(a) for a in args]
        timeout = timeout if timeout is not None else self._default_timeout
        logger.debug("Running command", context={"args": redact(args)})

        with ExitStack() as stack, Timer() as timer:
            stdin: Any = asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL
            stdout: Any = asyncio.subprocess.PIPE
            if stdin_path is not None:
                stdin = stack.enter_context(Path(stdin_path).open("rb"))
            if stdout_path is not None:
                stdout = stack.enter_context(Path(stdout_path).open("wb"))

            try:
                proc = await asyncio.create_subprocess_exec(
                    *args,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(cwd) if cwd else None,
                    env=self._environ(env),
                )
            except FileNotFoundError:
                return CommandResult(args=args, exit_code=127, stderr=f"{args[0]}: command not found")

            try:
                out, err = await asyncio.wait_for(proc.communicate(input), timeout=timeout)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                return CommandResult(
                    args=args,
                    exit_code=-1,
                    stderr=f"Timed out after {timeout} seconds",
                    timed_out=True,
                )

        return CommandResult(
            args=args,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=out.decode(errors="replace") if out else "",
            stderr=err.decode(errors="replace") if err else "",
            duration_ms=timer.duration_ms,
        )

    async def pipe(
        self,
        producer: Sequence[str],
        consumer: Sequence[str],
        *,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Stream ``producer`` stdout into ``consumer`` stdin."""
        producer = [str(a) for a in producer]
        consumer = [str(a) for a in consumer]
        args = [*producer, "|", *consumer]
        timeout = timeout if timeout is not None else self._default_timeout
        environ = self._environ(env)
        logger.debug("Running pipeline", context={"args": redact(args)})

        read_fd, write_fd = os.pipe()
        procs: list[asyncio.subprocess.Process] = []
        try:
            try:
                procs.append(await asyncio.create_subprocess_exec(
                    *producer,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=write_fd,
                    stderr=asyncio.subprocess.PIPE,
                    env=environ,
                ))
            finally:
                os.close(write_fd)
            procs.append(await asyncio.create_subprocess_exec(
                *consumer,
                stdin=read_fd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=environ,
            ))
        except FileNotFoundError as e:
            for proc in procs:
                proc.kill()
                await proc.wait()
            return CommandResult(args=args, exit_code=127, stderr=f"{e.filename}: command not found")
        finally:
            os.close(read_fd)

        with Timer() as timer:
            try:
                (_, p_err), (c_out, c_err) = await asyncio.wait_for(
                    asyncio.gather(procs[0].communicate(), procs[1].communicate()),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                for proc in procs:
                    if proc.returncode is None:
                        proc.kill()
                    await proc.wait()
                return CommandResult(
                    args=args,
                    exit_code=-1,
                    stderr=f"Timed out after {timeout} seconds",
                    timed_out=True,
                )

        producer_code = procs[0].returncode or 0
        consumer_code = procs[1].returncode or 0
        stderr = (p_err or b"").decode(errors="replace") + (c_err or b"").decode(errors="replace")
        return CommandResult(
            args=args,
            exit_code=producer_code or consumer_code,
            stdout=c_out.decode(errors="replace") if c_out else "",
            stderr=stderr,
            duration_ms=timer.duration_ms,
        )
