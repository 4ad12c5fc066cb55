"""DigitalOcean droplet provider for the dedicated-VM tier.

Droplets are created from a prepared snapshot that already carries the
application code, PHP-FPM, nginx and a local MariaDB. Everything after
creation happens over SSH.
"""

import asyncio
import shlex
import tempfile
from pathlib import Path
from typing import Any

import httpx

from dcloud_core.admin_tool import AdminTool
from dcloud_core.config import Config
from dcloud_core.exceptions import CommandError, ConfigError, ProvisioningError
from dcloud_core.models import DedicatedVMEnvironment, HostingEnvironment, HostingTier, Tenant
from dcloud_core.observability import get_logger
from dcloud_core.protocols.runner import CommandResult, CommandRunner
from dcloud_core.provisioning.providers.base import ProvisionRequest, require_environment
from dcloud_core.provisioning.settings import DatabaseSettings, SiteSettings
from dcloud_core.utils.crypto import generate_hex_secret
from dcloud_core.utils.retry import RetryPolicy, Sleep, poll_until, retry_async

logger = get_logger(__name__)

DROPLET_TAGS = ("drupalcloud", "standalone")
REMOTE_DUMP = "/tmp/database.sql.gz"
REMOTE_FILES = "/tmp/files.tar.gz"


def droplet_name(tenant: str) -> str:
    return f"drupalcloud-standalone-{tenant}"


def public_ipv4(droplet: dict[str, Any]) -> str | None:
    """First public IPv4 address of a droplet API object."""
    for network in droplet.get("networks", {}).get("v4", []):
        if network.get("type") == "public":
            return network.get("ip_address")
    return None


class DropletProvider:
    """Dedicated VM provisioning through the DigitalOcean API.

    Requires ``digitalocean.api_token`` and ``digitalocean.snapshot_id``.
    """

    tier = HostingTier.DEDICATED_VM

    def __init__(
        self,
        config: Config,
        runner: CommandRunner,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the provider.

        Args:
            config: Application configuration
            runner: Command runner used for ssh and scp
            transport: Optional httpx transport (tests)
            sleep: Sleep function used between polls

        Raises:
            ConfigError: If the API token or snapshot is not configured
        """
        self.config = config
        self.settings = config.digitalocean
        self.runner = runner
        self.transport = transport
        self.sleep = sleep

        if not self.settings.api_token:
            raise ConfigError("digitalocean.api_token is required for the dedicated_vm tier")
        if not self.settings.snapshot_id:
            raise ConfigError("digitalocean.snapshot_id is required for the dedicated_vm tier")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.api_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        async with httpx.AsyncClient(transport=self.transport, timeout=30.0) as client:
            try:
                response = await client.request(
                    method, f"{self.settings.api_url}{path}", headers=self._headers(), **kwargs
                )
            except httpx.HTTPError as e:
                raise ProvisioningError(f"DigitalOcean API request failed: {e}") from e

        if response.status_code not in (200, 201, 202, 204):
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise ProvisioningError(
                f"DigitalOcean API error ({response.status_code}): {message}"
            )
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # -- droplet lifecycle ---------------------------------------------

    async def provision(self, request: ProvisionRequest) -> DedicatedVMEnvironment:
        """Create the droplet. Its address is known only once it is active.

        A droplet left behind by an earlier attempt for the same tenant is
        adopted instead of creating a second one.
        """
        name = droplet_name(request.tenant)
        for existing in await self.find_droplets(request.tenant):
            if existing.get("name") == name and "id" in existing:
                logger.warning(
                    "Adopting existing droplet",
                    context={"droplet_id": existing["id"], "status": existing.get("status")},
                )
                return DedicatedVMEnvironment(
                    instance_id=str(existing["id"]),
                    public_address=public_ipv4(existing) or "",
                    region=existing.get("region", {}).get("slug") or request.region or self.settings.region,
                    name=name,
                    database_name=self.settings.database_name,
                    database_password=generate_hex_secret(16),
                )

        image: str | int = self.settings.snapshot_id or ""
        if isinstance(image, str) and image.isdigit():
            image = int(image)
        payload = {
            "name": name,
            "region": request.region or self.settings.region,
            "size": request.size or self.settings.size,
            "image": image,
            "ssh_keys": list(self.settings.ssh_key_ids),
            "tags": [*DROPLET_TAGS, f"site-{request.tenant}"],
            "monitoring": True,
        }
        data = await self._request("POST", "/droplets", json=payload)
        droplet = data.get("droplet", {})
        if "id" not in droplet:
            raise ProvisioningError("DigitalOcean did not return a droplet id")

        logger.info("Droplet created", context={"droplet_id": droplet["id"], "name": payload["name"]})
        return DedicatedVMEnvironment(
            instance_id=str(droplet["id"]),
            public_address="",
            region=payload["region"],
            name=payload["name"],
            database_name=self.settings.database_name,
            database_password=generate_hex_secret(16),
        )

    async def get_droplet(self, droplet_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/droplets/{droplet_id}")
        return data.get("droplet", {})

    async def find_droplets(self, tenant: str) -> list[dict[str, Any]]:
        """Droplets tagged for ``tenant``."""
        data = await self._request("GET", "/droplets", params={"tag_name": f"site-{tenant}"})
        return data.get("droplets", [])

    async def wait_until_ready(self, env: HostingEnvironment) -> DedicatedVMEnvironment:
        """Wait for the droplet to be active and reachable over SSH.

        Raises:
            ProvisioningError: If either wait runs out
        """
        env = require_environment(env, DedicatedVMEnvironment)
        try:
            droplet = await poll_until(
                lambda: self.get_droplet(env.instance_id),
                lambda d: d.get("status") == "active" and public_ipv4(d) is not None,
                interval=5.0,
                timeout=self.settings.active_timeout_seconds,
                sleep=self.sleep,
            )
        except TimeoutError as e:
            raise ProvisioningError(
                f"Droplet {env.instance_id} not active within {self.settings.active_timeout_seconds:.0f}s"
            ) from e
        env.public_address = public_ipv4(droplet) or ""
        logger.info("Droplet active", context={"droplet_id": env.instance_id, "ip": env.public_address})

        outcome = await retry_async(
            lambda: self.runner.run([*self.ssh_command(env), "echo ready"], timeout=15),
            RetryPolicy.fixed(self.settings.ssh_attempts, self.settings.ssh_interval_seconds),
            is_success=lambda result: result.ok,
            sleep=self.sleep,
        )
        if not outcome.succeeded:
            raise ProvisioningError(
                f"SSH to {env.public_address} not available after {outcome.attempts} attempts"
            )
        if self.settings.settle_seconds:
            await self.sleep(self.settings.settle_seconds)
        return env

    async def destroy(self, env: HostingEnvironment) -> None:
        env = require_environment(env, DedicatedVMEnvironment)
        logger.warning("Deleting droplet", context={"droplet_id": env.instance_id})
        await self._request("DELETE", f"/droplets/{env.instance_id}")

    # -- remote commands -----------------------------------------------

    def ssh_command(self, env: DedicatedVMEnvironment) -> list[str]:
        args = ["ssh"]
        if self.settings.ssh_key_path:
            args += ["-i", self.settings.ssh_key_path]
        args += [
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "ConnectTimeout=5",
            "-o", "BatchMode=yes",
            f"{self.settings.ssh_user}@{env.public_address}",
        ]
        return args

    def scp_command(self, env: DedicatedVMEnvironment, local: Path, remote: str) -> list[str]:
        args = ["scp"]
        if self.settings.ssh_key_path:
            args += ["-i", self.settings.ssh_key_path]
        args += [
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "BatchMode=yes",
            str(local),
            f"{self.settings.ssh_user}@{env.public_address}:{remote}",
        ]
        return args

    async def _ssh(
        self,
        env: DedicatedVMEnvironment,
        script: str,
        *,
        stdout_path: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        result = await self.runner.run(
            [*self.ssh_command(env), script],
            stdout_path=stdout_path,
            timeout=timeout or self.config.database.timeout_seconds,
        )
        return result.check()

    async def _upload(self, env: DedicatedVMEnvironment, local: Path, remote: str) -> None:
        result = await self.runner.run(
            self.scp_command(env, local, remote),
            timeout=self.config.database.timeout_seconds,
        )
        result.check()

    @property
    def sites_default(self) -> str:
        return f"{self.settings.app_root}/web/sites/default"

    # -- transfer ------------------------------------------------------

    async def export_database(self, env: HostingEnvironment, path: Path) -> None:
        env = require_environment(env, DedicatedVMEnvironment)
        db = shlex.quote(env.database_name)
        await self._ssh(env, f"mysqldump --single-transaction --quick --routines --triggers {db} | gzip -c", stdout_path=path)

    async def export_files(self, env: HostingEnvironment, path: Path) -> None:
        env = require_environment(env, DedicatedVMEnvironment)
        await self._ssh(env, f"tar -czf - -C {shlex.quote(self.sites_default)} files", stdout_path=path)

    async def import_database(self, env: HostingEnvironment, path: Path) -> None:
        """Recreate the VM database and its user, then load the dump."""
        env = require_environment(env, DedicatedVMEnvironment)
        if not env.database_password:
            env.database_password = generate_hex_secret(16)
        db = env.database_name.replace("`", "``")
        user = env.database_user.replace("'", "''")
        password = env.database_password.replace("'", "''")
        statements = (
            f"DROP DATABASE IF EXISTS `{db}`; "
            f"CREATE DATABASE `{db}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci; "
            f"DROP USER IF EXISTS '{user}'@'localhost'; "
            f"CREATE USER '{user}'@'localhost' IDENTIFIED BY '{password}'; "
            f"GRANT ALL PRIVILEGES ON `{db}`.* TO '{user}'@'localhost'; "
            "FLUSH PRIVILEGES;"
        )
        await self._ssh(env, f"mysql -e {shlex.quote(statements)}")
        await self._upload(env, path, REMOTE_DUMP)
        await self._ssh(
            env,
            f"gunzip -c {REMOTE_DUMP} | mysql {shlex.quote(env.database_name)} && rm -f {REMOTE_DUMP}",
        )

    async def import_files(self, env: HostingEnvironment, path: Path) -> None:
        env = require_environment(env, DedicatedVMEnvironment)
        target = shlex.quote(self.sites_default)
        await self._upload(env, path, REMOTE_FILES)
        await self._ssh(
            env,
            f"mkdir -p {target} && tar -xzf {REMOTE_FILES} -C {target} "
            f"&& chown -R www-data:www-data {target}/files && rm -f {REMOTE_FILES}",
        )

    async def configure(self, env: HostingEnvironment, tenant: Tenant) -> None:
        """Write a settings file for the VM's local database."""
        env = require_environment(env, DedicatedVMEnvironment)
        settings = SiteSettings(
            site_name=tenant.name,
            domain=tenant.domain,
            database=DatabaseSettings(
                name=env.database_name,
                username=env.database_user,
                password=env.database_password,
                host="localhost",
                collation="utf8mb4_unicode_ci",
            ),
            hash_salt=generate_hex_secret(32),
            file_public_path="sites/default/files",
            file_private_path=f"{self.settings.app_root}/private",
            config_sync_directory="../config/sync",
            space_token=tenant.access_token,
            extra_trusted_hosts=[env.public_address] if env.public_address else [],
            include_local=False,
        )
        remote = f"{self.sites_default}/settings.php"
        with tempfile.TemporaryDirectory() as tmp:
            local = Path(tmp) / "settings.php"
            local.write_text(settings.render())
            await self._ssh(env, f"chmod 644 {shlex.quote(remote)} 2>/dev/null || true")
            await self._upload(env, local, remote)
        await self._ssh(
            env,
            f"chown www-data:www-data {shlex.quote(remote)} && chmod 444 {shlex.quote(remote)}",
        )

    async def restart_services(self, env: HostingEnvironment) -> bool:
        """Restart PHP-FPM and the web server. Returns False on failure."""
        env = require_environment(env, DedicatedVMEnvironment)
        services = f"{self.settings.php_fpm_service} {self.settings.web_service}"
        try:
            await self._ssh(env, f"systemctl restart {services}", timeout=120)
        except CommandError as e:
            logger.warning("Service restart failed", context={"ip": env.public_address}, error=e)
            return False
        return True

    def admin(self, env: HostingEnvironment, domain: str | None = None) -> AdminTool:
        env = require_environment(env, DedicatedVMEnvironment)
        return AdminTool(
            self.runner,
            "vendor/bin/drush",
            uri=f"https://{domain}" if domain else None,
            prefix=self.ssh_command(env),
            remote_cwd=self.settings.app_root,
            timeout=self.config.drush.timeout_seconds,
        )

    def endpoint(self, env: HostingEnvironment, domain: str) -> str:
        """Plain HTTP on the VM address; DNS may still point at the shared host."""
        env = require_environment(env, DedicatedVMEnvironment)
        return f"http://{env.public_address}"
