"""Tenant lifecycle on the shared host: create, delete, lookup."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from dcloud_core.backup import BackupManager
from dcloud_core.config import Config
from dcloud_core.exceptions import (
    BackupError,
    ConfigError,
    DcloudError,
    InvalidInputError,
    ProvisioningError,
    TenantNotFoundError,
)
from dcloud_core.locking import TenantLockManager
from dcloud_core.models import (
    BackupArtifact,
    BackupKind,
    HostingEnvironment,
    HostingTier,
    Tenant,
    environment_from_dict,
)
from dcloud_core.notifier import ControlPlaneNotifier, NotificationResult
from dcloud_core.observability import OperationContext, Timer, get_logger
from dcloud_core.preflight import TEMPLATE_SOURCE, PreflightValidator
from dcloud_core.provisioning.compensation import CompensationStack
from dcloud_core.provisioning.credentials import rotate_service_credential
from dcloud_core.provisioning.providers.base import HostingProvider
from dcloud_core.provisioning.providers.shared import SharedHostProvider
from dcloud_core.routing import RoutingRegistrar
from dcloud_core.transfer.engine import environment_key
from dcloud_core.utils.validation import validate_tenant_name

logger = get_logger(__name__)


@dataclass
class TenantProvisionResult:
    """Result of tenant creation."""

    tenant: Tenant
    success: bool
    message: str
    warnings: list[str] = field(default_factory=list)
    notification: NotificationResult | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "tenant": self.tenant.name,
            "domain": self.tenant.domain,
            "source": self.tenant.source_tenant,
            "success": self.success,
            "message": self.message,
            "warnings": self.warnings,
            "notification": self.notification.to_dict() if self.notification else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class TenantDeletionResult:
    """Result of tenant deletion."""

    name: str
    removed: list[str] = field(default_factory=list)
    backup: BackupArtifact | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant": self.name,
            "removed": self.removed,
            "backup": self.backup.archive_path if self.backup else None,
            "warnings": self.warnings,
        }


class TenantManager:
    """Creates and deletes tenants on the shared tier.

    Each operation holds the tenant's lease for its whole duration, so a
    concurrent create, delete or migrate of the same name fails fast with
    LockError instead of racing on the directory or the database.
    """

    def __init__(
        self,
        config: Config,
        provider: SharedHostProvider,
        preflight: PreflightValidator,
        registrar: RoutingRegistrar,
        locks: TenantLockManager,
        backups: BackupManager,
        notifier: ControlPlaneNotifier | None = None,
        provider_for: Callable[[HostingTier], HostingProvider] | None = None,
    ) -> None:
        """Initialize tenant manager.

        Args:
            config: Application configuration
            provider: Shared host provider
            preflight: Name and conflict checks
            registrar: Routing registry
            locks: Per-tenant leases
            backups: Backup manager used for deletion-time backups
            notifier: Control-plane notifier (optional)
            provider_for: Provider lookup for tenants living on another tier
        """
        self.config = config
        self.provider = provider
        self.preflight = preflight
        self.registrar = registrar
        self.locks = locks
        self.backups = backups
        self.notifier = notifier
        self.provider_for = provider_for

    async def create(
        self,
        name: str,
        token: str,
        source: str | None = None,
        admin_password: str | None = None,
    ) -> TenantProvisionResult:
        """Create tenant ``name`` by cloning ``source`` (the template by default).

        Raises:
            ValidationError: If preflight rejects the request (nothing created)
            LockError: If another operation holds the tenant
            ProvisioningError: If a creation step fails
            RegistryError: If the routing registry cannot be updated
        """
        source = source or TEMPLATE_SOURCE
        async with OperationContext("create", tenant=name), self.locks.hold(name, "create"):
            with Timer() as timer:
                report = await self.preflight.validate(name, token, source)
                if report.source is None:
                    raise ProvisioningError(f"Source '{source}' could not be resolved")
                logger.info(
                    "Creating tenant",
                    context={"source": report.source.name, "domain": report.domain},
                )

                compensations = CompensationStack()
                try:
                    tenant = await self.provider.clone_tenant(name, token, report.source, compensations)
                    if await self.registrar.register(report.domain, name):
                        compensations.push(
                            f"remove routing entry {report.domain}",
                            lambda: self.registrar.unregister(report.domain),
                        )
                except DcloudError as e:
                    await self._handle_failure(name, compensations, e)
                    raise

                warnings = await self._finish(tenant, admin_password)

            notification = await self._notify(
                "site_creation", "completed", name, f"Site {report.domain} created from {source}"
            )
            logger.info("Tenant created", context={"domain": tenant.domain}, duration_ms=timer.duration_ms)
            return TenantProvisionResult(
                tenant=tenant,
                success=True,
                message=f"Tenant '{name}' created at {self.config.uri_for(name)}",
                warnings=warnings,
                notification=notification,
                duration_ms=timer.duration_ms,
            )

    async def clone_remote(
        self,
        name: str,
        token: str,
        source: HostingEnvironment,
        admin_password: str | None = None,
    ) -> TenantProvisionResult:
        """Create tenant ``name`` on the shared host from a site running elsewhere.

        The source (a standalone VM or a managed-platform project) is only
        read. Its database and files are pulled into a transfer workspace,
        so a rerun after a failed import does not pull them again.

        Raises:
            InvalidInputError: If the source is on the shared host
            ConfigError: If the source tier is not configured
            ValidationError: If preflight rejects the name or token
            LockError: If another operation holds the tenant
            TransferError: If the source cannot be exported
            ProvisioningError: If building the tenant fails
        """
        if source.tier == HostingTier.SHARED:
            raise InvalidInputError("Use create to clone a tenant on the shared host")
        if self.provider_for is None:
            raise ConfigError(f"No provider available for {source.tier.value}")
        label = environment_key(source)

        async with OperationContext("clone_remote", tenant=name), self.locks.hold(name, "create"):
            with Timer() as timer:
                report = await self.preflight.validate(name, token)
                remote = self.provider_for(source.tier)
                workspace = self.provider.engine.workspace(name, source)
                logger.info("Pulling remote site", context={"source": label, "domain": report.domain})
                await self.provider.engine.export(remote, source, workspace)

                compensations = CompensationStack()
                try:
                    tenant = await self.provider.import_tenant(name, token, workspace, label, compensations)
                    if await self.registrar.register(report.domain, name):
                        compensations.push(
                            f"remove routing entry {report.domain}",
                            lambda: self.registrar.unregister(report.domain),
                        )
                except DcloudError as e:
                    await self._handle_failure(name, compensations, e)
                    raise
                workspace.cleanup()

                warnings = await self._finish(tenant, admin_password, rotate_credential=True)

            notification = await self._notify(
                "site_creation", "completed", name, f"Site {report.domain} cloned from {label}"
            )
            logger.info("Remote site cloned", context={"domain": tenant.domain}, duration_ms=timer.duration_ms)
            return TenantProvisionResult(
                tenant=tenant,
                success=True,
                message=f"Tenant '{name}' cloned from {label} at {self.config.uri_for(name)}",
                warnings=warnings,
                notification=notification,
                duration_ms=timer.duration_ms,
            )

    async def _finish(
        self, tenant: Tenant, admin_password: str | None, rotate_credential: bool = False
    ) -> list[str]:
        """Steps whose failure leaves a working tenant."""
        warnings = []
        if not await self.registrar.confirm_propagation(tenant.domain):
            warnings.append(f"routing for {tenant.domain} not confirmed yet")

        admin = self.provider.admin(tenant.environment or self.provider.environment(tenant.name), tenant.domain)
        if not await admin.cache_rebuild(timeout=self.config.drush.cache_rebuild_timeout_seconds):
            warnings.append("cache rebuild failed")
        if rotate_credential:
            try:
                await rotate_service_credential(admin, tenant.access_token)
            except DcloudError as e:
                logger.warning("Service credential not rotated", error=e)
                warnings.append("service credential not rotated")
        if admin_password and not await admin.set_password("admin", admin_password):
            warnings.append("admin password not set")
        return warnings

    async def _handle_failure(self, name: str, compensations: CompensationStack, error: Exception) -> None:
        logger.error("Tenant creation failed", context={"tenant": name}, error=error)
        if compensations and self.config.provisioning.rollback_on_failure:
            failed = await compensations.unwind()
            if failed:
                logger.error("Rollback incomplete, clean up manually", context={"pending": failed})
        elif compensations:
            logger.warning(
                "Partial tenant left in place for inspection; to clean up:",
                context={"steps": compensations.describe()},
            )
        await self._notify("site_creation", "failed", name, str(error))

    async def delete(
        self,
        name: str,
        backup: bool = True,
        require_backup: bool | None = None,
        destroy_remote: bool = False,
    ) -> TenantDeletionResult:
        """Delete a tenant's directory, database and routing entry.

        Args:
            name: Tenant to delete
            backup: Take a full backup first
            require_backup: Abort if the backup fails (defaults to
                ``provisioning.require_backup_on_delete``)
            destroy_remote: Also destroy the environment of a migrated tenant

        Raises:
            TenantNotFoundError: If no resource of the tenant exists
            BackupError: If a required backup fails (nothing deleted)
        """
        validate_tenant_name(name)
        if require_backup is None:
            require_backup = self.config.provisioning.require_backup_on_delete

        async with OperationContext("delete", tenant=name), self.locks.hold(name, "delete"):
            directory = self.config.paths.sites_dir / name
            database = self.config.database.database_name(name)
            domain = self.config.domain_for(name)
            has_directory = directory.is_dir()
            has_database = await self.provider.database.exists(database)
            has_route = self.registrar.contains(domain)
            if not (has_directory or has_database or has_route):
                raise TenantNotFoundError(f"Tenant '{name}' not found")

            result = TenantDeletionResult(name=name)
            metadata = self.provider.read_metadata(name) if has_directory else None

            if backup and has_directory and has_database:
                try:
                    result.backup = await self.backups.create(name, BackupKind.FULL)
                except DcloudError as e:
                    if require_backup:
                        raise BackupError(f"Backup of '{name}' failed, nothing deleted: {e}") from e
                    logger.warning("Backup failed, deleting anyway", error=e)
                    result.warnings.append(f"backup failed: {e}")
            elif backup:
                result.warnings.append("backup skipped: tenant incomplete")

            if destroy_remote and metadata and metadata.environment:
                await self._destroy_remote(metadata.environment, result)

            if has_route:
                await self.registrar.unregister(domain)
                result.removed.append(f"routing entry {domain}")
            if has_directory:
                logger.warning("Deleting site directory", context={"directory": str(directory)})
                await self.provider.remove_tree(directory)
                result.removed.append(f"directory {directory}")
            if has_database:
                logger.warning("Dropping database", context={"database": database})
                await self.provider.database.drop(database)
                result.removed.append(f"database {database}")

            await self._notify("site_deletion", "completed", name, f"Removed: {', '.join(result.removed)}")
            logger.info("Tenant deleted", context={"removed": len(result.removed)})
            return result

    async def _destroy_remote(self, environment: dict[str, Any], result: TenantDeletionResult) -> None:
        env = environment_from_dict(environment)
        if self.provider_for is None or env.tier == HostingTier.SHARED:
            return
        try:
            await self.provider_for(env.tier).destroy(env)
            result.removed.append(f"{env.tier.value} environment")
        except DcloudError as e:
            logger.warning("Remote environment not destroyed", context={"tier": env.tier.value}, error=e)
            result.warnings.append(f"remote environment not destroyed: {e}")

    def get_tenant(self, name: str) -> Tenant | None:
        """Tenant as recorded in its metadata, or None if it has none."""
        metadata = self.provider.read_metadata(name)
        if metadata is None:
            return None
        environment = (
            environment_from_dict(metadata.environment)
            if metadata.environment
            else self.provider.environment(name)
        )
        return Tenant(
            name=metadata.space_name,
            access_token=metadata.space_token,
            domain=metadata.domain or self.config.domain_for(name),
            hosting_tier=metadata.hosting_tier,
            source_tenant=metadata.source_space,
            created_at=metadata.created_at,
            environment=environment,
        )

    async def _notify(self, event: str, status: str, name: str, message: str) -> NotificationResult | None:
        if self.notifier is None:
            return None
        return await self.notifier.send_event(event, status, name, message)
