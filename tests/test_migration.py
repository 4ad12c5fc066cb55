"""Tests for shared -> dedicated tier migrations."""

import json
from pathlib import Path

import pytest

from dcloud_core.admin_tool import AdminTool
from dcloud_core.exceptions import InvalidInputError, LockError, MigrationError, TenantNotFoundError, TransferError
from dcloud_core.inventory import MIGRATED
from dcloud_core.migration import MigrationOrchestrator
from dcloud_core.models import DedicatedVMEnvironment, HostingTier, MigrationStatus
from dcloud_core.provisioning.credentials import credential_rotation_sql
from dcloud_core.provisioning.providers.shared import METADATA_FILE


class FakeVMProvider:
    """Dedicated VM provider double; records every call."""

    tier = HostingTier.DEDICATED_VM

    def __init__(self, runner) -> None:
        self.runner = runner
        self.calls: list[str] = []
        self.fail_on: set[str] = set()
        self.destroyed: list[DedicatedVMEnvironment] = []
        self.restarted = False
        self.provisioned: list[str] = []
        self._next_id = 101

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise TransferError(f"{name} failed")

    async def provision(self, request):
        self._call("provision")
        instance_id = str(self._next_id)
        self._next_id += 1
        self.provisioned.append(instance_id)
        return DedicatedVMEnvironment(instance_id=instance_id, public_address="", region=request.region or "nyc1")

    async def wait_until_ready(self, env):
        self._call("wait_until_ready")
        env.public_address = "203.0.113.7"
        return env

    async def export_database(self, env, path):
        self._call("export_database")

    async def export_files(self, env, path):
        self._call("export_files")

    async def import_database(self, env, path):
        self._call("import_database")
        self.imported_dump = path.read_bytes()

    async def import_files(self, env, path):
        self._call("import_files")

    async def configure(self, env, tenant):
        self._call("configure")

    async def restart_services(self, env):
        self._call("restart_services")
        return True

    def admin(self, env, domain=None):
        return AdminTool(self.runner, "vendor/bin/drush", uri=f"https://{domain}", prefix=["ssh", "root@vm"])

    def endpoint(self, env, domain):
        return f"http://{env.public_address}"

    async def destroy(self, env):
        self.destroyed.append(env)


class DeadEndpoint:
    """Liveness check for a target that never answers."""

    async def wait_until_up(self, url, attempts, wait, host=None):
        return False


@pytest.fixture
def vm(cloud, runner):
    provider = FakeVMProvider(runner)
    cloud._providers[HostingTier.DEDICATED_VM] = provider
    return provider


@pytest.fixture
async def tenant(cloud, token):
    await cloud.tenants.create("acme", token)
    return "acme"


def read_metadata(config, name="acme"):
    return json.loads((config.paths.sites_dir / name / METADATA_FILE).read_text())


class TestMigration:
    """Tests for MigrationOrchestrator.migrate."""

    async def test_successful_migration(self, cloud, vm, tenant, config, token, runner):
        job = await cloud.migrations.migrate(tenant, "droplet", region="ams3")

        assert job.status == MigrationStatus.DONE
        assert job.target_environment.public_address == "203.0.113.7"
        assert job.target_environment.region == "ams3"
        assert vm.calls == [
            "provision", "wait_until_ready", "import_database", "import_files", "configure", "restart_services",
        ]
        assert job.steps_completed[-1] == "notify"
        assert job.warnings == []

        metadata = read_metadata(config)
        assert metadata["hostingTier"] == "dedicated_vm"
        assert metadata["environment"]["instance_id"] == "101"
        assert metadata["retiredEnvironments"][0]["tier"] == "shared"
        assert metadata["credentialRotatedAt"]
        assert not cloud.registrar.contains("acme.example.test")
        # Source data stays for inspection
        assert (config.paths.sites_dir / "acme").is_dir()
        assert token in runner.inputs("sql:cli")[0]
        assert all(token not in command for command in runner.commands())

    async def test_migration_is_one_way(self, cloud, vm, tenant):
        await cloud.migrations.migrate(tenant, "dedicated_vm")

        with pytest.raises(InvalidInputError, match="one-way"):
            await cloud.migrations.migrate(tenant, "dedicated_vm")
        assert await cloud.inventory.site_state(tenant) == MIGRATED

    async def test_shared_is_not_a_target(self, cloud, tenant):
        with pytest.raises(InvalidInputError, match="Cannot migrate"):
            await cloud.migrations.migrate(tenant, "shared")

    async def test_unknown_tenant(self, cloud, vm):
        with pytest.raises(TenantNotFoundError):
            await cloud.migrations.migrate("ghost", "droplet")

    async def test_fatal_step_keeps_tenant_on_shared(self, cloud, vm, tenant, config):
        vm.fail_on.add("import_database")

        with pytest.raises(MigrationError) as exc_info:
            await cloud.migrations.migrate(tenant, "droplet")

        job = exc_info.value.job
        assert job.status == MigrationStatus.FAILED
        assert job.error.startswith("import:")
        assert "configure" not in vm.calls
        assert vm.destroyed == []
        assert "hostingTier" not in read_metadata(config)
        assert cloud.registrar.contains("acme.example.test")

    async def test_rerun_resumes_from_workspace(self, cloud, vm, tenant, config):
        """A rerun reuses the provisioned target and skips the finished database import."""
        vm.fail_on.add("import_files")
        with pytest.raises(MigrationError) as exc_info:
            await cloud.migrations.migrate(tenant, "droplet")
        assert exc_info.value.job.target_environment.instance_id == "101"

        vm.fail_on.clear()
        vm.calls.clear()
        job = await cloud.migrations.migrate(tenant, "droplet")

        assert job.status == MigrationStatus.DONE
        assert vm.provisioned == ["101"]
        assert job.target_environment.instance_id == "101"
        assert vm.calls == ["wait_until_ready", "import_files", "configure", "restart_services"]
        assert read_metadata(config)["environment"]["instance_id"] == "101"
        assert not (Path(config.paths.workspace_dir) / "acme").exists()

    async def test_failed_verification_keeps_tenant_on_shared(self, cloud, vm, tenant, config, runner):
        runner.respond("--field=bootstrap", exit_code=1)
        orchestrator = MigrationOrchestrator(
            config,
            cloud.shared,
            cloud.provider_for,
            cloud.engine,
            cloud.registrar,
            cloud.locks,
            probe=DeadEndpoint(),
        )

        with pytest.raises(MigrationError) as exc_info:
            await orchestrator.migrate(tenant, "droplet")

        job = exc_info.value.job
        assert job.error.startswith("verify:")
        assert "retire_source" not in job.steps_completed
        assert cloud.registrar.contains("acme.example.test")
        assert "hostingTier" not in read_metadata(config)
        assert vm.destroyed == []
        assert await cloud.inventory.site_state(tenant) != MIGRATED

        # Once the target answers, the rerun finishes on the same instance
        vm.calls.clear()
        job = await cloud.migrations.migrate(tenant, "droplet")
        assert job.status == MigrationStatus.DONE
        assert vm.provisioned == ["101"]
        assert "import_database" not in vm.calls
        assert not cloud.registrar.contains("acme.example.test")

    async def test_rollback_destroys_target_when_enabled(self, cloud, vm, tenant, config):
        vm.fail_on.add("import_database")
        orchestrator = MigrationOrchestrator(
            config.model_copy(update={"provisioning": config.provisioning.model_copy(update={"rollback_on_failure": True})}),
            cloud.shared,
            cloud.provider_for,
            cloud.engine,
            cloud.registrar,
            cloud.locks,
        )

        with pytest.raises(MigrationError):
            await orchestrator.migrate(tenant, "droplet")

        assert [env.instance_id for env in vm.destroyed] == ["101"]

        # A destroyed target is not reused
        vm.fail_on.clear()
        job = await orchestrator.migrate(tenant, "droplet")
        assert job.target_environment.instance_id == "102"
        assert vm.provisioned == ["101", "102"]

    async def test_credential_rotation_failure_is_a_warning(self, cloud, vm, tenant, runner, config):
        runner.respond("sql:cli", exit_code=1, stderr="ERROR 1146: Table 'consumers' doesn't exist")

        job = await cloud.migrations.migrate(tenant, "droplet")

        assert job.status == MigrationStatus.DONE
        assert job.warnings[0].startswith("rotate_credential:")
        assert "credentialRotatedAt" not in read_metadata(config)

    async def test_lock_held(self, cloud, vm, tenant):
        async with cloud.locks.hold(tenant, "delete"):
            with pytest.raises(LockError):
                await cloud.migrations.migrate(tenant, "droplet")
        assert vm.calls == []

    async def test_delete_can_destroy_remote_environment(self, cloud, vm, tenant):
        await cloud.migrations.migrate(tenant, "droplet")

        result = await cloud.tenants.delete(tenant, destroy_remote=True)

        assert [env.instance_id for env in vm.destroyed] == ["101"]
        assert "dedicated_vm environment" in result.removed


class TestCredentialRotation:
    def test_statement_binds_token(self, token):
        sql = credential_rotation_sql(token, "uuid-1", "secret")
        assert sql.startswith("DELETE FROM consumers")
        assert f"'secret', '{token}'" in sql
