"""Shared multisite host provider.

Each tenant is a directory under ``web/sites/<name>`` plus a database
``<prefix><name>`` on the shared database server.
"""

import asyncio
import gzip
import json
import os
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Any

from dcloud_core.admin_tool import AdminTool
from dcloud_core.config import Config
from dcloud_core.exceptions import DcloudError, ProvisioningError, TransferError
from dcloud_core.models import (
    HostingEnvironment,
    HostingTier,
    SharedEnvironment,
    Tenant,
    TenantMetadata,
)
from dcloud_core.observability import get_logger
from dcloud_core.preflight import SourceTenant
from dcloud_core.protocols.database import DatabaseServer
from dcloud_core.protocols.runner import CommandRunner
from dcloud_core.provisioning.compensation import CompensationStack
from dcloud_core.provisioning.providers.base import ProvisionRequest, require_environment
from dcloud_core.provisioning.settings import DatabaseSettings, SiteSettings
from dcloud_core.transfer.engine import DataTransferEngine
from dcloud_core.transfer.workspace import TransferWorkspace
from dcloud_core.utils.crypto import TokenEncryption, derive_hash_salt

logger = get_logger(__name__)

METADATA_FILE = "space.json"
SETTINGS_FILE = "settings.php"

# Copied from the source tenant but never valid for the clone
_SOURCE_ONLY = (SETTINGS_FILE, METADATA_FILE, "settings.local.php")
_CACHE_DIRS = ("files/php", "files/css", "files/js")

DIR_MODE = 0o755
FILE_MODE = 0o644
PUBLIC_DIR_MODE = 0o775
METADATA_MODE = 0o640


def _tar_filter(member: tarfile.TarInfo) -> tarfile.TarInfo | None:
    parts = Path(member.name).parts
    if len(parts) > 1 and parts[0] == "files" and parts[1] in ("php", "css", "js"):
        return None
    return member


class SharedHostProvider:
    """Creates and tears down tenants on the shared host."""

    tier = HostingTier.SHARED

    def __init__(
        self,
        config: Config,
        runner: CommandRunner,
        database: DatabaseServer,
        engine: DataTransferEngine,
        encryption: TokenEncryption | None = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.database = database
        self.engine = engine
        self.encryption = encryption

    @property
    def sites_dir(self) -> Path:
        return self.config.paths.sites_dir

    def environment(self, name: str) -> SharedEnvironment:
        directory = self.sites_dir / name
        return SharedEnvironment(
            directory_path=str(directory),
            database_name=self.config.database.database_name(name),
            config_file=str(directory / SETTINGS_FILE),
        )

    # -- metadata ------------------------------------------------------

    def metadata_path(self, name: str) -> Path:
        return self.sites_dir / name / METADATA_FILE

    def read_metadata(self, name: str) -> TenantMetadata | None:
        """Tenant metadata record, or None if missing or unreadable."""
        path = self.metadata_path(name)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable metadata record", context={"path": str(path)}, error=e)
            return None
        metadata = TenantMetadata.from_dict(data)
        if metadata.environment and self.encryption:
            metadata.environment = self._crypt_secrets(metadata.environment, self.encryption.decrypt)
        return metadata

    def write_metadata(self, name: str, metadata: TenantMetadata) -> Path:
        """Write the metadata record, readable only by the service account."""
        data = metadata.to_dict()
        if data.get("environment") and self.encryption:
            data["environment"] = self._crypt_secrets(data["environment"], self.encryption.encrypt)
        path = self.metadata_path(name)
        tmp = path.with_name(f".{METADATA_FILE}.tmp")
        tmp.write_text(json.dumps(data, indent=2) + "\n")
        os.chmod(tmp, METADATA_MODE)
        self._chown(tmp)
        os.replace(tmp, path)
        return path

    @staticmethod
    def _crypt_secrets(environment: dict[str, Any], transform: Any) -> dict[str, Any]:
        result = dict(environment)
        for key in ("database_password",):
            if result.get(key):
                result[key] = transform(result[key])
        return result

    # -- create --------------------------------------------------------

    async def clone_tenant(
        self,
        name: str,
        token: str,
        source: SourceTenant,
        compensations: CompensationStack | None = None,
    ) -> Tenant:
        """Create tenant ``name`` as a copy of ``source``.

        Raises:
            ProvisioningError: If any step fails. Completed steps are
                registered on ``compensations`` but not undone here.
        """
        compensations = compensations if compensations is not None else CompensationStack()
        env = self.environment(name)
        directory = Path(env.directory_path)

        try:
            await self.engine.copy_tree(source.directory, directory)
            compensations.push(f"remove directory {directory}", lambda: self.remove_tree(directory))
            self._strip_source_artifacts(directory)

            await self.database.recreate(env.database_name)
            compensations.push(
                f"drop database {env.database_name}",
                lambda: self.database.drop(env.database_name),
            )
            if source.is_template:
                await self.engine.restore_database(
                    self.database,
                    Path(self.config.paths.template_backup),
                    env.database_name,
                    regenerate_from=source.database,
                )
            else:
                await self.engine.clone_database(self.database, source.database, env.database_name)

            tenant = self._record_tenant(name, token, env, source.name)
            tables = await self.database.table_count(env.database_name)
        except ProvisioningError:
            raise
        except (DcloudError, OSError) as e:
            raise ProvisioningError(f"Creating tenant '{name}' failed: {e}") from e

        if tables < 1:
            raise ProvisioningError(f"Database {env.database_name} has no tables after cloning from {source.name}")
        logger.info("Tenant resources created", context={"tenant": name, "tables": tables})
        return tenant

    async def import_tenant(
        self,
        name: str,
        token: str,
        workspace: TransferWorkspace,
        source_label: str,
        compensations: CompensationStack | None = None,
    ) -> Tenant:
        """Create tenant ``name`` from artifacts pulled off another host.

        The site directory starts from the template so the code layout
        matches this host; database and public files come from the
        workspace.

        Raises:
            ProvisioningError: If any step fails. Completed steps are
                registered on ``compensations`` but not undone here.
        """
        compensations = compensations if compensations is not None else CompensationStack()
        env = self.environment(name)
        directory = Path(env.directory_path)

        try:
            await self.engine.copy_tree(self.config.paths.template_dir, directory)
            compensations.push(f"remove directory {directory}", lambda: self.remove_tree(directory))
            self._strip_source_artifacts(directory)
            shutil.rmtree(directory / "files")

            await self.database.recreate(env.database_name)
            compensations.push(
                f"drop database {env.database_name}",
                lambda: self.database.drop(env.database_name),
            )
            await self.import_database(env, workspace.normalized_dump)
            await self.import_files(env, workspace.files_archive)
            (directory / "files").mkdir(exist_ok=True)

            tenant = self._record_tenant(name, token, env, source_label)
            tables = await self.database.table_count(env.database_name)
        except ProvisioningError:
            raise
        except (DcloudError, OSError, tarfile.TarError) as e:
            raise ProvisioningError(f"Importing tenant '{name}' from {source_label} failed: {e}") from e

        if tables < 1:
            raise ProvisioningError(f"Database {env.database_name} has no tables after importing from {source_label}")
        logger.info("Tenant imported", context={"tenant": name, "source": source_label, "tables": tables})
        return tenant

    def _record_tenant(self, name: str, token: str, env: SharedEnvironment, source_name: str) -> Tenant:
        """Settings, permissions and metadata of a freshly populated tenant."""
        directory = Path(env.directory_path)
        tenant = Tenant(
            name=name,
            access_token=token,
            domain=self.config.domain_for(name),
            source_tenant=source_name,
            environment=env,
        )
        self.write_settings(tenant, env)
        self.apply_permissions(directory)
        self.write_metadata(name, TenantMetadata(
            space_name=name,
            space_token=token,
            domain=tenant.domain,
            source_space=source_name,
            created_at=tenant.created_at,
            cloned_from=source_name,
        ))
        return tenant

    def _strip_source_artifacts(self, directory: Path) -> None:
        for filename in _SOURCE_ONLY:
            path = directory / filename
            if path.exists():
                path.chmod(0o644)
                path.unlink()
        for cache in _CACHE_DIRS:
            shutil.rmtree(directory / cache, ignore_errors=True)
        (directory / "files").mkdir(exist_ok=True)
        (directory / "private").mkdir(exist_ok=True)

    def write_settings(self, tenant: Tenant, env: SharedEnvironment) -> Path:
        """Render the tenant's settings file."""
        db = self.config.database
        settings = SiteSettings.for_shared_site(
            name=tenant.name,
            domain=tenant.domain,
            database=DatabaseSettings(
                name=env.database_name,
                username=db.app_user,
                password=db.app_password,
                host=db.host,
                port=db.port,
            ),
            hash_salt=derive_hash_salt(tenant.name, self.config.domain_suffix),
            token=tenant.access_token,
        )
        path = Path(env.config_file)
        if path.exists():
            path.chmod(0o644)
        path.write_text(settings.render())
        return path

    def apply_permissions(self, directory: Path) -> None:
        """Non-world-writable tree; the public files tree is group-writable."""
        public = directory / "files"
        for root, dirs, files in os.walk(directory):
            root_path = Path(root)
            in_public = root_path == public or public in root_path.parents
            os.chmod(root_path, PUBLIC_DIR_MODE if in_public else DIR_MODE)
            self._chown(root_path)
            for filename in files:
                file_path = root_path / filename
                if file_path.is_symlink():
                    continue
                os.chmod(file_path, METADATA_MODE if filename == METADATA_FILE else FILE_MODE)
                self._chown(file_path)

    def _chown(self, path: Path) -> None:
        paths = self.config.paths
        if not paths.service_user or os.geteuid() != 0:
            return
        shutil.chown(path, user=paths.service_user, group=paths.service_group or paths.service_user)

    async def provision(self, request: ProvisionRequest) -> SharedEnvironment:
        """Create a tenant from the template.

        Raises:
            ProvisioningError: If ``options`` carries no access token
        """
        token = (request.options or {}).get("token")
        if not token:
            raise ProvisioningError(f"Provisioning '{request.tenant}' on the shared host needs an access token")
        source = SourceTenant(
            name="template",
            directory=self.config.paths.template_dir,
            database=self.config.database.template_database,
            is_template=True,
        )
        await self.clone_tenant(request.tenant, token, source)
        return self.environment(request.tenant)

    async def wait_until_ready(self, env: HostingEnvironment) -> HostingEnvironment:
        return env

    # -- delete --------------------------------------------------------

    async def destroy(self, env: HostingEnvironment) -> None:
        env = require_environment(env, SharedEnvironment)
        directory = Path(env.directory_path)
        if directory.exists():
            logger.info("Removing site directory", context={"directory": str(directory)})
            await self.remove_tree(directory)
        await self.database.drop(env.database_name)

    async def remove_tree(self, directory: Path) -> None:
        def _rm() -> None:
            # settings.php may be read-only
            for root, dirs, _ in os.walk(directory):
                for d in dirs:
                    path = Path(root) / d
                    if not path.is_symlink():
                        path.chmod(0o755)
            shutil.rmtree(directory)

        await asyncio.to_thread(_rm)

    # -- transfer ------------------------------------------------------

    async def export_database(self, env: HostingEnvironment, path: Path) -> None:
        """gzip-compressed dump of the tenant database."""
        env = require_environment(env, SharedEnvironment)
        with tempfile.TemporaryDirectory(dir=path.parent) as tmp:
            plain = Path(tmp) / "database.sql"
            await self.database.dump(env.database_name, plain)
            await asyncio.to_thread(_gzip_file, plain, path)

    async def export_files(self, env: HostingEnvironment, path: Path) -> None:
        """``files/`` tree as a tar.gz, without generated asset caches."""
        env = require_environment(env, SharedEnvironment)
        files = Path(env.directory_path) / "files"
        if not files.is_dir():
            raise TransferError(f"No files directory at {files}")

        def _archive() -> None:
            partial = path.with_name(path.name + ".partial")
            with tarfile.open(partial, "w:gz") as tar:
                tar.add(files, arcname="files", filter=_tar_filter)
            partial.replace(path)

        await asyncio.to_thread(_archive)

    async def import_database(self, env: HostingEnvironment, path: Path) -> None:
        env = require_environment(env, SharedEnvironment)
        with tempfile.TemporaryDirectory(dir=path.parent) as tmp:
            plain = Path(tmp) / "database.sql"
            await asyncio.to_thread(_gunzip_file, path, plain)
            await self.database.recreate(env.database_name)
            await self.database.load(env.database_name, plain)

    async def import_files(self, env: HostingEnvironment, path: Path) -> None:
        env = require_environment(env, SharedEnvironment)
        directory = Path(env.directory_path)

        def _extract() -> None:
            with tarfile.open(path, "r:gz") as tar:
                tar.extractall(directory, filter="data")

        await asyncio.to_thread(_extract)
        self.apply_permissions(directory)

    async def configure(self, env: HostingEnvironment, tenant: Tenant) -> None:
        env = require_environment(env, SharedEnvironment)
        self.write_settings(tenant, env)

    def admin(self, env: HostingEnvironment, domain: str | None = None) -> AdminTool:
        """Drush bound to the tenant's URI on this host."""
        uri = f"{self.config.serving.scheme}://{domain}" if domain else None
        return AdminTool(
            self.runner,
            self.config.drush.path,
            uri=uri,
            cwd=Path(self.config.paths.project_root),
            timeout=self.config.drush.timeout_seconds,
        )

    def endpoint(self, env: HostingEnvironment, domain: str) -> str:
        return f"{self.config.serving.scheme}://{domain}"


def _gzip_file(source: Path, target: Path) -> None:
    with source.open("rb") as src, gzip.open(target, "wb") as dst:
        shutil.copyfileobj(src, dst)


def _gunzip_file(source: Path, target: Path) -> None:
    with gzip.open(source, "rb") as src, target.open("wb") as dst:
        shutil.copyfileobj(src, dst)
