"""Upsun provider for the managed-platform tier.

Drives the ``upsun`` CLI. The platform owns the database credentials; the
template repository's settings file reads the tenant identity from
project variables set by configure().
"""

import asyncio
import re
import tarfile
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

from dcloud_core.admin_tool import AdminTool
from dcloud_core.config import Config
from dcloud_core.exceptions import CommandError, ConfigError, ProvisioningError
from dcloud_core.models import HostingEnvironment, HostingTier, ManagedPlatformEnvironment, Tenant
from dcloud_core.observability import get_logger
from dcloud_core.protocols.runner import CommandResult, CommandRunner
from dcloud_core.provisioning.providers.base import ProvisionRequest, require_environment
from dcloud_core.utils.crypto import generate_hex_secret
from dcloud_core.utils.retry import Sleep, poll_until

logger = get_logger(__name__)

PROJECT_ID_RE = re.compile(r"Project ID:\s*([a-z0-9]+)", re.IGNORECASE)
REMOTE_DUMP = "/tmp/database.sql.gz"


def project_title(tenant: str) -> str:
    return f"dcloud-{tenant}"


class PlatformProvider:
    """Managed platform projects through the Upsun CLI."""

    tier = HostingTier.MANAGED_PLATFORM

    def __init__(
        self,
        config: Config,
        runner: CommandRunner,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.settings = config.upsun
        self.runner = runner
        self.sleep = sleep
        self.clock = clock

    def cli(self, *args: str) -> list[str]:
        return [self.settings.cli, *args]

    @staticmethod
    def target(env: ManagedPlatformEnvironment) -> list[str]:
        return ["-p", env.project_id, "-e", env.environment]

    def ssh_prefix(self, env: ManagedPlatformEnvironment) -> list[str]:
        return self.cli("ssh", *self.target(env), "--")

    async def _run(
        self,
        args: list[str],
        *,
        timeout: float | None = None,
        cwd: Path | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        result = await self.runner.run(
            args,
            cwd=cwd,
            stdin_path=stdin_path,
            stdout_path=stdout_path,
            timeout=timeout or self.settings.deploy_timeout_seconds,
        )
        return result.check()

    # -- project lifecycle ---------------------------------------------

    async def provision(self, request: ProvisionRequest) -> ManagedPlatformEnvironment:
        """Create the project and push the template code into it.

        Raises:
            ConfigError: If ``upsun.template_repo`` is not set (nothing created)
            ProvisioningError: If the project cannot be created or seeded
        """
        repo = self.settings.template_repo
        if not repo:
            raise ConfigError("upsun.template_repo is required to provision the managed_platform tier")
        region = request.region or self.settings.region
        args = self.cli(
            "project:create",
            f"--title={project_title(request.tenant)}",
            f"--region={region}",
            "--no-interaction",
        )
        if self.settings.org:
            args.append(f"--org={self.settings.org}")
        try:
            result = await self._run(args, timeout=self.settings.create_timeout_seconds)
        except CommandError as e:
            raise ProvisioningError(f"Upsun project creation failed: {e}") from e

        match = PROJECT_ID_RE.search(result.stdout) or PROJECT_ID_RE.search(result.stderr)
        if not match:
            raise ProvisioningError("Could not find the project ID in Upsun CLI output")
        project_id = match.group(1)
        logger.info("Upsun project created", context={"project_id": project_id})

        env = ManagedPlatformEnvironment(
            project_id=project_id,
            project_url=f"{self.settings.console_url}/{project_id}",
            region=region,
            name=project_title(request.tenant),
            environment=self.settings.environment,
        )
        await self._push_template(env, repo)
        return env

    async def _push_template(self, env: ManagedPlatformEnvironment, repo: str) -> None:
        with tempfile.TemporaryDirectory(prefix="dcloud-upsun-") as tmp:
            checkout = Path(tmp) / "code"
            try:
                await self._run(
                    [
                        "git", "clone", "--depth", "1",
                        "--branch", self.settings.template_branch,
                        repo, str(checkout),
                    ],
                    timeout=300,
                )
                await self._run(
                    self.cli("push", *self.target(env), "--yes", "--no-wait"),
                    cwd=checkout,
                )
            except CommandError as e:
                raise ProvisioningError(f"Pushing template code to {env.project_id} failed: {e}") from e

    async def environment_status(self, env: ManagedPlatformEnvironment) -> str:
        result = await self.runner.run(
            self.cli("environment:info", *self.target(env), "status", "--pipe"),
            timeout=60,
        )
        return result.stdout.strip() if result.ok else ""

    async def wait_until_ready(self, env: HostingEnvironment) -> ManagedPlatformEnvironment:
        """Wait for the environment to be active and record its URL.

        Raises:
            ProvisioningError: If the deploy timeout passes first
        """
        env = require_environment(env, ManagedPlatformEnvironment)
        try:
            await poll_until(
                lambda: self.environment_status(env),
                lambda status: status == "active",
                interval=self.settings.poll_interval_seconds,
                timeout=self.settings.deploy_timeout_seconds,
                sleep=self.sleep,
                clock=self.clock,
            )
        except TimeoutError as e:
            raise ProvisioningError(
                f"Environment {env.environment} of {env.project_id} did not become active "
                f"within {self.settings.deploy_timeout_seconds:.0f}s"
            ) from e

        result = await self.runner.run(
            self.cli("url", *self.target(env), "--primary", "--pipe"),
            timeout=60,
        )
        url = result.stdout.strip().splitlines()[0] if result.ok and result.stdout.strip() else ""
        if url:
            env.project_url = url.rstrip("/")
        else:
            logger.warning("Could not read primary URL, using console URL", context={"project_id": env.project_id})
        return env

    async def destroy(self, env: HostingEnvironment) -> None:
        env = require_environment(env, ManagedPlatformEnvironment)
        logger.warning("Deleting Upsun project", context={"project_id": env.project_id})
        try:
            await self._run(self.cli("project:delete", "-p", env.project_id, "--no-interaction"), timeout=300)
        except CommandError as e:
            raise ProvisioningError(f"Deleting project {env.project_id} failed: {e}") from e

    # -- transfer ------------------------------------------------------

    async def export_database(self, env: HostingEnvironment, path: Path) -> None:
        env = require_environment(env, ManagedPlatformEnvironment)
        await self._run([*self.ssh_prefix(env), "drush sql:dump | gzip -c"], stdout_path=path)

    async def export_files(self, env: HostingEnvironment, path: Path) -> None:
        env = require_environment(env, ManagedPlatformEnvironment)
        with tempfile.TemporaryDirectory(prefix="dcloud-upsun-") as tmp:
            files = Path(tmp) / "files"
            files.mkdir()
            await self._run(self.cli(
                "mount:download", *self.target(env),
                f"--mount={self.settings.files_mount}", f"--target={files}", "--yes",
            ))

            def _archive() -> None:
                with tarfile.open(path, "w:gz") as tar:
                    tar.add(files, arcname="files")

            await asyncio.to_thread(_archive)

    async def import_database(self, env: HostingEnvironment, path: Path) -> None:
        env = require_environment(env, ManagedPlatformEnvironment)
        await self._run([*self.ssh_prefix(env), f"cat > {REMOTE_DUMP}"], stdin_path=path)
        await self._run(
            [*self.ssh_prefix(env), f"gunzip -c {REMOTE_DUMP} | drush sql:cli && rm -f {REMOTE_DUMP}"]
        )

    async def import_files(self, env: HostingEnvironment, path: Path) -> None:
        env = require_environment(env, ManagedPlatformEnvironment)
        with tempfile.TemporaryDirectory(prefix="dcloud-upsun-") as tmp:

            def _extract() -> None:
                with tarfile.open(path, "r:gz") as tar:
                    tar.extractall(tmp, filter="data")

            await asyncio.to_thread(_extract)
            source = Path(tmp) / "files"
            if not source.is_dir():
                source.mkdir()
            await self._run(self.cli(
                "mount:upload", *self.target(env),
                f"--mount={self.settings.files_mount}", f"--source={source}", "--yes",
            ))

    async def configure(self, env: HostingEnvironment, tenant: Tenant) -> None:
        """Set the tenant identity as project variables."""
        env = require_environment(env, ManagedPlatformEnvironment)
        variables = {
            "env:DRUPALCLOUD_SPACE_NAME": tenant.name,
            "env:DRUPALCLOUD_SPACE_TOKEN": tenant.access_token,
            "env:DRUPAL_HASH_SALT": generate_hex_secret(32),
        }
        for name, value in variables.items():
            await self.set_variable(env, name, value, sensitive=name != "env:DRUPALCLOUD_SPACE_NAME")

    async def set_variable(
        self, env: ManagedPlatformEnvironment, name: str, value: str, sensitive: bool = False
    ) -> None:
        """Create a project variable, updating it if it already exists."""
        common = ["-p", env.project_id, "--level=project", f"--value={value}", "--no-interaction"]
        create = self.cli("variable:create", f"--name={name}", *common)
        if sensitive:
            create.append("--sensitive=true")
        result = await self.runner.run(create, timeout=120)
        if result.ok:
            return
        try:
            await self._run(self.cli("variable:update", name, *common), timeout=120)
        except CommandError as e:
            raise ProvisioningError(f"Setting variable {name} failed: {e}") from e

    def admin(self, env: HostingEnvironment, domain: str | None = None) -> AdminTool:
        env = require_environment(env, ManagedPlatformEnvironment)
        return AdminTool(
            self.runner,
            "drush",
            uri=env.project_url,
            prefix=self.ssh_prefix(env),
            timeout=self.config.drush.timeout_seconds,
        )

    def endpoint(self, env: HostingEnvironment, domain: str) -> str:
        env = require_environment(env, ManagedPlatformEnvironment)
        return env.project_url
