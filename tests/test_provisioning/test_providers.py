"""Tests for the dedicated-VM and managed-platform providers."""

import json

import httpx
import pytest

from dcloud_core.config import Config
from dcloud_core.exceptions import ConfigError, ProvisioningError
from dcloud_core.models import DedicatedVMEnvironment, ManagedPlatformEnvironment, SharedEnvironment, Tenant
from dcloud_core.protocols.runner import CommandResult
from dcloud_core.provisioning.providers import get_provider
from dcloud_core.provisioning.providers.base import ProvisionRequest
from dcloud_core.provisioning.providers.droplet import DropletProvider, droplet_name, public_ipv4
from dcloud_core.provisioning.providers.platform import PlatformProvider

DROPLET = {
    "id": 42,
    "status": "active",
    "networks": {"v4": [
        {"type": "private", "ip_address": "10.0.0.5"},
        {"type": "public", "ip_address": "203.0.113.7"},
    ]},
}


@pytest.fixture
def do_config(config_dict):
    return Config.from_dict({
        **config_dict,
        "digitalocean": {"api_token": "do-token", "snapshot_id": "1234", "ssh_attempts": 3},
    })


def droplet_provider(config, runner, sleep, handler):
    return DropletProvider(config, runner, transport=httpx.MockTransport(handler), sleep=sleep)


@pytest.fixture
def vm_env():
    return DedicatedVMEnvironment(
        instance_id="42", public_address="203.0.113.7", region="nyc1", database_password="pw"
    )


class TestDropletProvider:
    """Tests for DropletProvider."""

    def test_requires_credentials(self, config, runner):
        with pytest.raises(ConfigError, match="api_token"):
            DropletProvider(config, runner)

    def test_public_ipv4(self):
        assert public_ipv4(DROPLET) == "203.0.113.7"
        assert public_ipv4({"networks": {"v4": []}}) is None

    async def test_provision_posts_droplet(self, do_config, runner, sleep):
        seen = []

        def handler(request):
            seen.append(request)
            if request.method == "GET":
                return httpx.Response(200, json={"droplets": []})
            return httpx.Response(202, json={"droplet": {"id": 42}})

        provider = droplet_provider(do_config, runner, sleep, handler)
        env = await provider.provision(ProvisionRequest(tenant="acme", domain="acme.example.test", size="s-4vcpu-8gb"))

        assert seen[0].url.params["tag_name"] == "site-acme"
        posts = [r for r in seen if r.method == "POST"]
        body = json.loads(posts[0].content)
        assert posts[0].headers["Authorization"] == "Bearer do-token"
        assert body["name"] == droplet_name("acme")
        assert body["image"] == 1234
        assert body["size"] == "s-4vcpu-8gb"
        assert body["region"] == "nyc1"
        assert "site-acme" in body["tags"]
        assert env.instance_id == "42"
        assert env.database_password

    async def test_provision_adopts_leftover_droplet(self, do_config, runner, sleep):
        seen = []
        leftover = {**DROPLET, "id": 77, "name": droplet_name("acme"), "region": {"slug": "ams3"}}

        def handler(request):
            seen.append(request.method)
            return httpx.Response(200, json={"droplets": [{"id": 5, "name": "someone-else"}, leftover]})

        provider = droplet_provider(do_config, runner, sleep, handler)
        env = await provider.provision(ProvisionRequest(tenant="acme", domain="acme.example.test"))

        assert seen == ["GET"]
        assert env.instance_id == "77"
        assert env.public_address == "203.0.113.7"
        assert env.region == "ams3"

    async def test_api_error_message(self, do_config, runner, sleep):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={"droplets": []})
            return httpx.Response(422, json={"message": "invalid size"})

        provider = droplet_provider(do_config, runner, sleep, handler)
        with pytest.raises(ProvisioningError, match="invalid size"):
            await provider.provision(ProvisionRequest(tenant="acme", domain="acme.example.test"))

    async def test_wrong_environment_type(self, do_config, runner, sleep, tmp_path):
        provider = droplet_provider(do_config, runner, sleep, lambda request: httpx.Response(204))
        shared = SharedEnvironment("/srv/sites/acme", "drupal_acme", "/srv/sites/acme/settings.php")

        with pytest.raises(ProvisioningError, match="SharedEnvironment given"):
            await provider.export_database(shared, tmp_path / "dump.sql.gz")
        assert runner.calls == []

    async def test_wait_until_active_and_reachable(self, do_config, runner, sleep):
        states = iter([{"id": 42, "status": "new"}, DROPLET])
        provider = droplet_provider(
            do_config, runner, sleep, lambda request: httpx.Response(200, json={"droplet": next(states)})
        )
        env = DedicatedVMEnvironment(instance_id="42", public_address="", region="nyc1")

        ready = await provider.wait_until_ready(env)

        assert ready.public_address == "203.0.113.7"
        assert sleep.delays == [5.0]
        assert runner.calls[-1][-2:] == ["root@203.0.113.7", "echo ready"]

    async def test_ssh_never_ready(self, do_config, runner, sleep):
        runner.respond("echo ready", exit_code=255, stderr="Connection refused")
        provider = droplet_provider(do_config, runner, sleep, lambda request: httpx.Response(200, json={"droplet": DROPLET}))

        with pytest.raises(ProvisioningError, match="after 3 attempts"):
            await provider.wait_until_ready(DedicatedVMEnvironment(instance_id="42", public_address="", region="nyc1"))

    async def test_import_database_recreates_and_loads(self, do_config, runner, sleep, vm_env, tmp_path):
        provider = droplet_provider(do_config, runner, sleep, lambda request: httpx.Response(204))
        dump = tmp_path / "database.sql.gz"
        dump.write_bytes(b"")

        await provider.import_database(vm_env, dump)

        commands = runner.commands()
        assert "CREATE USER" in commands[0]
        assert commands[1].startswith("scp")
        assert "gunzip -c /tmp/database.sql.gz | mysql drupal" in commands[2]

    async def test_restart_failure_is_reported(self, do_config, runner, sleep, vm_env):
        runner.respond("systemctl restart", exit_code=1)
        provider = droplet_provider(do_config, runner, sleep, lambda request: httpx.Response(204))
        assert not await provider.restart_services(vm_env)

    def test_admin_runs_drush_remotely(self, do_config, runner, sleep, vm_env):
        provider = droplet_provider(do_config, runner, sleep, lambda request: httpx.Response(204))
        command = provider.admin(vm_env, "acme.example.test").command("status")
        assert command[0] == "ssh"
        assert command[-1] == "cd /opt/drupalcloud && vendor/bin/drush --uri=https://acme.example.test status"

    async def test_configure_uploads_settings(self, do_config, runner, sleep, vm_env, token):
        provider = droplet_provider(do_config, runner, sleep, lambda request: httpx.Response(204))
        tenant = Tenant(name="acme", access_token=token, domain="acme.example.test")

        await provider.configure(vm_env, tenant)

        assert runner.commands("scp")[0].endswith("root@203.0.113.7:/opt/drupalcloud/web/sites/default/settings.php")
        assert "chmod 444" in runner.commands()[-1]


class TestPlatformProvider:
    """Tests for PlatformProvider."""

    @pytest.fixture
    def platform_env(self):
        return ManagedPlatformEnvironment(project_id="abc123", project_url="https://console/abc123", region="us-2")

    @pytest.fixture
    def upsun_config(self, config_dict):
        return Config.from_dict({**config_dict, "upsun": {"template_repo": "git@example.test:template.git"}})

    async def test_provision_parses_project_id(self, upsun_config, runner, sleep):
        runner.respond("project:create", stderr="Creating project...\nProject ID: abc123xyz\n")
        provider = PlatformProvider(upsun_config, runner, sleep=sleep)

        env = await provider.provision(ProvisionRequest(tenant="acme", domain="acme.example.test"))

        assert env.project_id == "abc123xyz"
        assert env.name == "dcloud-acme"
        assert "--title=dcloud-acme" in runner.calls[0]
        assert "git@example.test:template.git" in runner.commands("git clone")[0]
        assert runner.commands("upsun push -p abc123xyz")

    async def test_provision_without_project_id(self, upsun_config, runner, sleep):
        runner.respond("project:create", stdout="Done.")
        provider = PlatformProvider(upsun_config, runner, sleep=sleep)
        with pytest.raises(ProvisioningError, match="project ID"):
            await provider.provision(ProvisionRequest(tenant="acme", domain="acme.example.test"))

    async def test_provision_requires_template_repo(self, config, runner, sleep):
        provider = PlatformProvider(config, runner, sleep=sleep)

        with pytest.raises(ConfigError, match="template_repo"):
            await provider.provision(ProvisionRequest(tenant="acme", domain="acme.example.test"))
        assert runner.calls == []

    async def test_wait_until_ready_records_url(self, config, runner, sleep, platform_env):
        statuses = iter(["building", "building", "active"])
        runner.respond(
            "environment:info",
            handler=lambda args, **kw: CommandResult(args=args, exit_code=0, stdout=next(statuses)),
        )
        runner.respond("url", stdout="https://main-abc123.example/\nhttps://www.example/\n")
        provider = PlatformProvider(config, runner, sleep=sleep)

        env = await provider.wait_until_ready(platform_env)

        assert env.project_url == "https://main-abc123.example"
        assert sleep.delays == [30.0, 30.0]

    async def test_variable_falls_back_to_update(self, config, runner, sleep, platform_env):
        runner.respond("variable:create", exit_code=1, stderr="already exists")
        provider = PlatformProvider(config, runner, sleep=sleep)

        await provider.set_variable(platform_env, "env:DRUPALCLOUD_SPACE_NAME", "acme")

        assert runner.commands("variable:update")[0].startswith("upsun variable:update env:DRUPALCLOUD_SPACE_NAME")

    async def test_configure_marks_secrets_sensitive(self, config, runner, sleep, platform_env, token):
        provider = PlatformProvider(config, runner, sleep=sleep)
        await provider.configure(platform_env, Tenant(name="acme", access_token=token, domain="acme.example.test"))

        creates = runner.commands("variable:create")
        assert len(creates) == 3
        assert "--sensitive=true" not in creates[0]
        assert all("--sensitive=true" in c for c in creates[1:])


class TestGetProvider:
    def test_platform_by_alias(self, config, runner):
        assert isinstance(get_provider("upsun", config, runner), PlatformProvider)

    def test_droplet_requires_configuration(self, config, runner):
        with pytest.raises(ConfigError):
            get_provider("droplet", config, runner)


class TestSharedHostProvider:
    """Tests for SharedHostProvider.provision."""

    async def test_provision_requires_token(self, cloud, config):
        with pytest.raises(ProvisioningError, match="access token"):
            await cloud.shared.provision(ProvisionRequest(tenant="acme", domain="acme.example.test"))
        assert not (config.paths.sites_dir / "acme").exists()

    async def test_provision_from_template(self, cloud, token):
        env = await cloud.shared.provision(
            ProvisionRequest(tenant="acme", domain="acme.example.test", options={"token": token})
        )

        assert isinstance(env, SharedEnvironment)
        assert env.database_name == cloud.config.database.database_name("acme")
        assert await cloud.shared.database.table_count(env.database_name) == 3
