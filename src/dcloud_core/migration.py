"""Moves a tenant from the shared host to a dedicated tier.

The job runs the steps of ``tiers.get_migration_steps`` in order. Fatal
steps stop the job with MigrationError; the rest downgrade to warnings.
The tenant keeps being served from the shared host until the target has
been verified. Only the cutover step removes the shared route and points
the tenant record at the new environment; after that there is no way back.

The provisioned target is recorded in the transfer workspace, so a rerun
after a failure reuses it instead of paying for a second instance.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from dcloud_core.config import Config
from dcloud_core.exceptions import (
    DcloudError,
    InvalidInputError,
    MigrationError,
    ProvisioningError,
    TenantNotFoundError,
)
from dcloud_core.locking import TenantLockManager
from dcloud_core.models import (
    DedicatedVMEnvironment,
    HostingEnvironment,
    HostingTier,
    ManagedPlatformEnvironment,
    MigrationJob,
    MigrationStatus,
    Tenant,
    TenantMetadata,
    environment_from_dict,
    utc_now,
)
from dcloud_core.notifier import ControlPlaneNotifier
from dcloud_core.observability import OperationContext, Timer, get_logger
from dcloud_core.probe import EndpointProbe
from dcloud_core.provisioning.credentials import rotate_service_credential
from dcloud_core.provisioning.providers.base import HostingProvider, ProvisionRequest, require_environment
from dcloud_core.provisioning.providers.shared import SharedHostProvider
from dcloud_core.provisioning.tiers import MigrationStep, get_migration_steps, get_tier
from dcloud_core.routing import RoutingRegistrar
from dcloud_core.transfer.engine import DataTransferEngine, TransferReport
from dcloud_core.transfer.workspace import TransferWorkspace
from dcloud_core.utils.validation import validate_tenant_name

logger = get_logger(__name__)


@dataclass
class _Run:
    """State shared by the steps of one job."""

    job: MigrationJob
    tenant: Tenant
    metadata: TenantMetadata
    target: HostingProvider
    workspace: TransferWorkspace
    report: TransferReport
    size: str | None = None
    region: str | None = None
    cut_over: bool = False

    @property
    def target_env(self) -> HostingEnvironment:
        if self.job.target_environment is None:
            raise MigrationError("Target environment not provisioned", self.job)
        return self.job.target_environment


class MigrationOrchestrator:
    """Runs shared -> dedicated VM / managed platform migrations."""

    def __init__(
        self,
        config: Config,
        shared: SharedHostProvider,
        provider_for: Callable[[HostingTier], HostingProvider],
        engine: DataTransferEngine,
        registrar: RoutingRegistrar,
        locks: TenantLockManager,
        notifier: ControlPlaneNotifier | None = None,
        probe: EndpointProbe | None = None,
    ) -> None:
        self.config = config
        self.shared = shared
        self.provider_for = provider_for
        self.engine = engine
        self.registrar = registrar
        self.locks = locks
        self.notifier = notifier
        self.probe = probe or registrar.probe

    async def migrate(
        self,
        name: str,
        target_tier: str | HostingTier,
        size: str | None = None,
        region: str | None = None,
    ) -> MigrationJob:
        """Migrate tenant ``name`` to ``target_tier``.

        Returns:
            The finished job (status Done), with any warnings

        Raises:
            InvalidInputError: If the target is not a migration target or the
                tenant is not on the shared tier
            TenantNotFoundError: If the tenant has no metadata record
            LockError: If another operation holds the tenant
            MigrationError: If a fatal step fails; carries the job
        """
        validate_tenant_name(name)
        tier = get_tier(target_tier)
        if not tier.migration_target:
            raise InvalidInputError(f"Cannot migrate to '{tier.tier.value}'")

        async with OperationContext("migrate", tenant=name), self.locks.hold(name, "migrate"):
            metadata = self.shared.read_metadata(name)
            if metadata is None:
                raise TenantNotFoundError(f"Tenant '{name}' not found")
            if metadata.hosting_tier != HostingTier.SHARED:
                raise InvalidInputError(
                    f"Tenant '{name}' already runs on {metadata.hosting_tier.value}; "
                    "migrations are one-way"
                )

            source_env = self.shared.environment(name)
            tenant = Tenant(
                name=name,
                access_token=metadata.space_token,
                domain=metadata.domain or self.config.domain_for(name),
                source_tenant=metadata.source_space,
                created_at=metadata.created_at,
                environment=source_env,
            )
            job = MigrationJob(tenant=name, source_environment=source_env, target_tier=tier.tier)
            run = _Run(
                job=job,
                tenant=tenant,
                metadata=metadata,
                target=self.provider_for(tier.tier),
                workspace=self.engine.workspace(name, source_env),
                report=TransferReport(),
                size=size,
                region=region,
            )

            logger.info("Starting migration", context={"target_tier": tier.tier.value})
            steps = get_migration_steps(tier.tier)
            for number, step in enumerate(steps, start=1):
                await self._run_step(run, step, number, len(steps))

            job.status = MigrationStatus.DONE
            job.finished_at = time.time()
            run.workspace.cleanup()
            logger.info(
                "Migration complete",
                context={"steps": len(job.steps_completed), "warnings": len(job.warnings)},
            )
            return job

    async def _run_step(self, run: _Run, step: MigrationStep, number: int, total: int) -> None:
        job = run.job
        job.status = step.status
        logger.info(f"Step {number}/{total}: {step.name}", context={"status": step.status.value})
        with Timer() as timer:
            try:
                ok = await getattr(self, f"_step_{step.id}")(run)
            except (DcloudError, OSError) as e:
                if step.fatal:
                    await self._fail(run, step, e)
                logger.warning(f"{step.name} failed (non-fatal)", error=e)
                job.warnings.append(f"{step.id}: {e}")
                return
        if ok is False:
            job.warnings.append(f"{step.id}: incomplete")
            return
        job.steps_completed.append(step.id)
        logger.info(f"{step.name} done", duration_ms=timer.duration_ms)

    async def _fail(self, run: _Run, step: MigrationStep, error: BaseException) -> None:
        job = run.job
        job.status = MigrationStatus.FAILED
        job.error = f"{step.id}: {error}"
        job.finished_at = time.time()
        logger.error(f"Migration failed at {step.name}", error=error)

        if run.cut_over:
            logger.warning("Shared route already removed; the tenant is straddled, resolve manually")
        elif job.target_environment is not None:
            if self.config.provisioning.rollback_on_failure:
                try:
                    await run.target.destroy(job.target_environment)
                    run.workspace.forget_target()
                    logger.warning("Target environment destroyed")
                except DcloudError as e:
                    logger.error("Could not destroy target environment", error=e)
            else:
                logger.warning(
                    "Target environment left in place for the next attempt; "
                    "the shared environment still serves the tenant",
                    context={"target": job.target_environment.to_dict()},
                )
        logger.info("Transfer workspace kept for resume", context={"path": str(run.workspace.path)})
        raise MigrationError(f"Migration of '{job.tenant}' failed at {step.id}: {error}", job) from error

    # -- steps ---------------------------------------------------------

    async def _step_export(self, run: _Run) -> None:
        await self.engine.export(self.shared, run.job.source_environment, run.workspace, run.report)

    async def _step_provision(self, run: _Run) -> None:
        recorded = run.workspace.recorded_target()
        if recorded and recorded.get("tier") == run.job.target_tier.value:
            run.job.target_environment = environment_from_dict(recorded)
            logger.info("Reusing target from the previous attempt", context={"target": recorded})
            return
        request = ProvisionRequest(
            tenant=run.tenant.name,
            domain=run.tenant.domain,
            size=run.size,
            region=run.region,
        )
        run.job.target_environment = await run.target.provision(request)
        run.workspace.record_target(run.target_env.to_dict())

    async def _step_wait_ready(self, run: _Run) -> None:
        run.job.target_environment = await run.target.wait_until_ready(run.target_env)
        run.workspace.record_target(run.target_env.to_dict())

    async def _step_import(self, run: _Run) -> None:
        await self.engine.import_into(run.target, run.target_env, run.workspace, run.report)

    async def _step_configure(self, run: _Run) -> None:
        await run.target.configure(run.target_env, run.tenant)

    async def _step_rotate_credential(self, run: _Run) -> None:
        await rotate_service_credential(run.target.admin(run.target_env, run.tenant.domain), run.tenant.access_token)
        run.metadata.credential_rotated_at = utc_now()
        self.shared.write_metadata(run.tenant.name, run.metadata)

    async def _step_restart_services(self, run: _Run) -> bool:
        restart = getattr(run.target, "restart_services", None)
        if restart is None:
            return True
        return await restart(run.target_env)

    async def _step_post_import(self, run: _Run) -> bool:
        admin = run.target.admin(run.target_env, run.tenant.domain)
        results = [
            await admin.cache_rebuild(),
            await admin.update_database(),
            await admin.cache_rebuild(),
        ]
        return all(results)

    async def _step_verify(self, run: _Run) -> None:
        env = run.target_env
        serving = self.config.serving
        url = run.target.endpoint(env, run.tenant.domain).rstrip("/") + serving.probe_path
        host = run.tenant.domain if isinstance(env, DedicatedVMEnvironment) else None
        if await self.probe.wait_until_up(url, max(serving.probe_attempts, 1), serving.probe_wait_seconds, host=host):
            logger.info("Target answers over HTTP", context={"url": url})
            return
        logger.warning("Target did not answer over HTTP, checking bootstrap", context={"url": url})
        if not await run.target.admin(env, run.tenant.domain).bootstrap_ok():
            raise ProvisioningError(f"Target at {url} neither answers over HTTP nor bootstraps")

    async def _step_retire_source(self, run: _Run) -> None:
        """Cut over: drop the shared route, then point the record at the target.

        Source data stays for inspection.
        """
        await self.registrar.unregister(run.tenant.domain)
        run.cut_over = True
        retired = {**run.job.source_environment.to_dict(), "retired_at": utc_now()}
        run.metadata.retired_environments.append(retired)
        run.metadata.hosting_tier = run.job.target_tier
        run.metadata.environment = run.target_env.to_dict()
        self.shared.write_metadata(run.tenant.name, run.metadata)

    async def _step_notify(self, run: _Run) -> bool:
        if self.notifier is None:
            return True
        result = await self.notifier.notify_completion(run.job.target_tier, self.completion_payload(run))
        if result.remediation and not result.delivered:
            run.job.warnings.append(f"manual remediation: {result.remediation}")
        return result.delivered or result.skipped

    def completion_payload(self, run: _Run) -> dict[str, Any]:
        env = run.target_env
        name = run.tenant.name
        if isinstance(env, DedicatedVMEnvironment):
            return {
                "machineName": name,
                "provider": "digitalocean",
                "dropletId": env.instance_id,
                "dropletIp": env.public_address,
                "siteUrl": self.config.uri_for(name),
                "region": env.region,
            }
        env = require_environment(env, ManagedPlatformEnvironment)
        return {
            "machineName": name,
            "projectId": env.project_id,
            "projectName": env.name,
            "projectUrl": env.project_url,
            "region": env.region,
        }
