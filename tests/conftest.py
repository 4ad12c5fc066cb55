"""Pytest configuration and fixtures."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from dcloud_core.app import DrupalCloud
from dcloud_core.backends.database.sqlite import SQLiteServer
from dcloud_core.backends.kv.memory import MemoryKVStore
from dcloud_core.config import Config
from dcloud_core.protocols.runner import CommandResult

VALID_TOKEN = "space_tok_" + "ab12" * 13 + "cd"


class FakeRunner:
    """CommandRunner double that records every invocation.

    Responses are matched by substring against the space-joined argv; the
    most recently registered match wins. Unmatched commands succeed with
    empty output.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.options: list[dict[str, Any]] = []
        self._responses: list[tuple[str, Any]] = []

    def respond(
        self,
        needle: str,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        handler: Callable[..., CommandResult] | None = None,
    ) -> None:
        if handler is not None:
            self._responses.append((needle, handler))
        else:
            self._responses.append((needle, {"exit_code": exit_code, "stdout": stdout, "stderr": stderr}))

    async def run(
        self,
        args: Any,
        *,
        input: bytes | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        args = [str(a) for a in args]
        self.calls.append(args)
        self.options.append({"cwd": cwd, "stdout_path": stdout_path, "stdin_path": stdin_path, "input": input})
        joined = " ".join(args)
        for needle, response in reversed(self._responses):
            if needle in joined:
                if callable(response):
                    return response(args, stdout_path=stdout_path, stdin_path=stdin_path)
                return CommandResult(args=args, **response)
        if stdout_path is not None:
            Path(stdout_path).write_bytes(b"")
        return CommandResult(args=args, exit_code=0)

    async def pipe(self, producer: Any, consumer: Any, **kwargs: Any) -> CommandResult:
        return await self.run([*producer, "|", *consumer])

    def commands(self, needle: str = "") -> list[str]:
        """Joined argv of every recorded call containing ``needle``."""
        return [" ".join(c) for c in self.calls if needle in " ".join(c)]

    def inputs(self, needle: str = "") -> list[str]:
        """Decoded stdin of every recorded call containing ``needle``."""
        return [
            (options["input"] or b"").decode()
            for call, options in zip(self.calls, self.options)
            if needle in " ".join(call)
        ]


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def token() -> str:
    """A well-formed access token."""
    return VALID_TOKEN


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def config_dict(tmp_path: Path) -> dict[str, Any]:
    """Configuration rooted in a temporary directory."""
    return {
        "domain_suffix": "example.test",
        "paths": {
            "project_root": str(tmp_path / "project"),
            "backups_dir": str(tmp_path / "backups"),
            "template_backup": str(tmp_path / "template-backup.sql"),
            "workspace_dir": str(tmp_path / "transfer"),
            "locks_dir": str(tmp_path / "locks"),
        },
        "database": {"backend": "sqlite", "path": str(tmp_path / "databases")},
        "serving": {"probe_attempts": 0, "lint_command": None, "reload_command": []},
        "locking": {"backend": "memory"},
    }


@pytest.fixture
def config(config_dict: dict[str, Any]) -> Config:
    return Config.from_dict(config_dict)


@pytest.fixture
def database(config: Config) -> SQLiteServer:
    return SQLiteServer(config.database.path)


@pytest.fixture
def template(config: Config, database: SQLiteServer) -> Path:
    """Template site directory and template database with content."""
    directory = config.paths.template_dir
    (directory / "files" / "css").mkdir(parents=True)
    (directory / "files" / "logo.txt").write_text("logo")
    (directory / "files" / "css" / "aggregated.css").write_text("body{}")
    (directory / "modules").mkdir()
    (directory / "modules" / "custom.module").write_text("<?php\n")
    (directory / "settings.php").write_text("<?php\n$databases = [];\n")

    conn = database.connect(config.database.template_database)
    conn.executescript(
        """
        CREATE TABLE node (nid INTEGER PRIMARY KEY, title TEXT);
        CREATE TABLE users (uid INTEGER PRIMARY KEY, name TEXT);
        CREATE TABLE config (name TEXT PRIMARY KEY, data TEXT);
        INSERT INTO node (title) VALUES ('Welcome');
        INSERT INTO users (name) VALUES ('admin');
        INSERT INTO config VALUES ('system.site', 'template');
        """
    )
    conn.commit()
    conn.close()
    return directory


@pytest.fixture
def runner() -> FakeRunner:
    """Runner whose drush reports a bootstrapped site."""
    fake = FakeRunner()
    fake.respond("--field=bootstrap", stdout="Successful\n")
    fake.respond("--field=drupal-version", stdout="10.3.1\n")
    return fake


@pytest.fixture
def kv_store() -> MemoryKVStore:
    return MemoryKVStore()


@pytest.fixture
def webhook_calls() -> list[httpx.Request]:
    return []


@pytest.fixture
def transport(webhook_calls: list[httpx.Request]) -> httpx.MockTransport:
    """Accepts every request and records it."""
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_calls.append(request)
        return httpx.Response(200, json={"success": True})

    return httpx.MockTransport(handler)


@pytest.fixture
async def cloud(config, runner, database, kv_store, transport, sleep, template):
    """Fully wired DrupalCloud over SQLite and a fake runner."""
    instance = DrupalCloud(config, runner=runner, database=database, kv=kv_store, transport=transport, sleep=sleep)
    async with instance:
        yield instance
