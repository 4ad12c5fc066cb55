"""Tests for the command-line dispatcher."""

import argparse
import gzip
import json
import tarfile

import pytest
import yaml

from dcloud_core.app import DrupalCloud
from dcloud_core.cli import EXIT_FAILURE, EXIT_OK, EXIT_USAGE, _split_backups_args, build_parser, main, remote_source
from dcloud_core.config import Config
from dcloud_core.exceptions import ProvisioningError
from dcloud_core.models import HostingTier


class BrokenVMProvider:
    """Dedicated VM provider whose provisioning always fails."""

    tier = HostingTier.DEDICATED_VM

    async def provision(self, request):
        raise ProvisioningError("quota exceeded")

    async def destroy(self, env):
        pass


class PlatformSiteProvider:
    """Managed platform provider double serving a site to be pulled."""

    tier = HostingTier.MANAGED_PLATFORM

    def __init__(self) -> None:
        self.sources = []

    async def export_database(self, env, path):
        self.sources.append(env)
        with gzip.open(path, "wb") as f:
            f.write(b"CREATE TABLE node (nid INTEGER PRIMARY KEY, title TEXT);\n")

    async def export_files(self, env, path):
        with tarfile.open(path, "w:gz") as tar:
            info = tarfile.TarInfo("files")
            info.type = tarfile.DIRTYPE
            tar.addfile(info)


@pytest.fixture
def config_file(
tmp_path, config_dict):
    path = tmp_path / "dcloud.yaml"
    path.write_text(yaml.dump(config_dict))
    return str(path)


@pytest.fixture
def run_cli(config_file, runner, database, kv_store, transport, sleep, template):
    """Invoke main() against the shared fixtures; returns the exit code."""
    providers = {}

    def factory(config):
        cloud = DrupalCloud(config, runner=runner, database=database, kv=kv_store, transport=transport, sleep=sleep)
        cloud._providers.update(providers)
        return cloud

    def run(*argv):
        return main(["--config", config_file, *argv], cloud_factory=factory)

    run.providers = providers
    return run


class TestParser:
    """Tests for argument parsing."""

    def test_missing_arguments_is_usage_error(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["create", "acme"])
        assert exc_info.value.code == EXIT_USAGE

    def test_delete_backup_flag_choices(self):
        args = build_parser().parse_args(["delete", "acme", "no-backup"])
        assert args.backup == "no-backup"
        with pytest.raises(SystemExit):
            build_parser().parse_args(["delete", "acme", "maybe"])

    def test_log_level_is_case_insensitive(self):
        args = build_parser().parse_args(["--log-level", "debug", "list"])
        assert args.log_level == "DEBUG"

    @pytest.mark.parametrize(
        "argv,expected",
        [
            ([], (None, "table")),
            (["json"], (None, "json")),
            (["acme"], ("acme", "table")),
            (["acme", "csv"], ("acme", "csv")),
        ],
    )
    def test_backups_arguments(self, argv, expected):
        assert _split_backups_args(argparse.ArgumentParser(), argv) == expected

    def test_backups_rejects_unknown_format(self):
        with pytest.raises(SystemExit):
            _split_backups_args(argparse.ArgumentParser(), ["acme", "xml"])

    def test_clone_remote_needs_one_source(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["clone-remote", "beta", "tok"])
        with pytest.raises(SystemExit):
            build_parser().parse_args(["clone-remote", "beta", "tok", "--host", "h", "--upsun-project", "p"])

    def test_remote_source_from_host(self, config_dict):
        args = build_parser().parse_args(["clone-remote", "beta", "tok", "--host", "203.0.113.9"])
        env = remote_source(Config.from_dict(config_dict), args)

        assert env.tier == HostingTier.DEDICATED_VM
        assert env.instance_id == "203.0.113.9"
        assert env.public_address == "203.0.113.9"

    def test_remote_source_from_project(self, config_dict):
        args = build_parser().parse_args(
            ["clone-remote", "beta", "tok", "--upsun-project", "abc123", "--upsun-environment", "staging"]
        )
        env = remote_source(Config.from_dict(config_dict), args)

        assert env.tier == HostingTier.MANAGED_PLATFORM
        assert env.project_id == "abc123"
        assert env.environment == "staging"


class TestMain:
    """End-to-end runs of main()."""

    def test_create_list_delete(self, run_cli, token, capsys):
        assert run_cli("create", "acme", token) == EXIT_OK
        out = capsys.readouterr().out
        assert "=== create: success ===" in out
        assert "url: https://acme.example.test" in out

        assert run_cli("list", "json") == EXIT_OK
        listed = json.loads(capsys.readouterr().out)
        assert [site["name"] for site in listed] == ["acme"]

        assert run_cli("delete", "acme", "no") == EXIT_OK
        out = capsys.readouterr().out
        assert "backup: none" in out

    def test_invalid_token_fails(self, run_cli, capsys):
        assert run_cli("create", "acme", "space_tok_short") == EXIT_FAILURE
        assert "=== create: failed ===" in capsys.readouterr().out

    def test_conflict_fails(self, run_cli, token, capsys):
        run_cli("create", "acme", token)
        capsys.readouterr()

        assert run_cli("create", "acme", token) == EXIT_FAILURE
        assert "conflicts with existing resources" in capsys.readouterr().out

    def test_backup_and_listing(self, run_cli, token, capsys):
        run_cli("create", "acme", token)
        assert run_cli("backup", "acme", "database") == EXIT_OK
        capsys.readouterr()

        assert run_cli("backups", "acme", "csv") == EXIT_OK
        lines = capsys.readouterr().out.strip().splitlines()
        assert lines[0] == "tenant_name,kind,timestamp,size,archive_path"
        assert lines[1].startswith("acme,database,")

    def test_cleanup_backups(self, run_cli, capsys):
        assert run_cli("cleanup-backups", "30") == EXIT_OK
        assert "deleted: 0" in capsys.readouterr().out

    def test_negative_days_is_usage_error(self, run_cli):
        assert run_cli("cleanup-backups", "-1") == EXIT_USAGE

    def test_status_summary(self, run_cli, token, capsys):
        run_cli("create", "acme", token)
        capsys.readouterr()

        assert run_cli("status", "acme", "summary") == EXIT_OK
        assert capsys.readouterr().out.startswith("✅ acme: HEALTHY")

    def test_status_of_missing_site(self, run_cli):
        assert run_cli("status", "ghost") == EXIT_FAILURE

    def test_migrate_to_unknown_tier(self, run_cli, token):
        run_cli("create", "acme", token)
        assert run_cli("migrate", "acme", "mainframe") == EXIT_FAILURE

    def test_failed_migration_prints_job(self, run_cli, token, capsys):
        run_cli("create", "acme", token)
        capsys.readouterr()
        run_cli.providers[HostingTier.DEDICATED_VM] = BrokenVMProvider()

        assert run_cli("migrate", "acme", "droplet") == EXIT_FAILURE

        out = capsys.readouterr().out
        assert "=== migrate: failed ===" in out
        assert "status: Failed" in out
        assert "completed: export" in out
        assert "quota exceeded" in out

    def test_clone_remote_from_platform(self, run_cli, token, capsys):
        platform = PlatformSiteProvider()
        run_cli.providers[HostingTier.MANAGED_PLATFORM] = platform

        assert run_cli("clone-remote", "beta", token, "--upsun-project", "abc123") == EXIT_OK

        out = capsys.readouterr().out
        assert "=== clone-remote: success ===" in out
        assert "source: managed_platform:abc123" in out
        assert platform.sources[0].project_id == "abc123"

    def test_clone_remote_of_taken_name_fails(self, run_cli, token, capsys):
        run_cli("create", "beta", token)
        capsys.readouterr()

        assert run_cli("clone-remote", "beta", token, "--host", "203.0.113.9") == EXIT_FAILURE
        assert "=== clone-remote: failed ===" in capsys.readouterr().out

    def test_reset_sites_php(self, run_cli, token, capsys, config_dict):
        run_cli("create", "acme", token)
        capsys.readouterr()

        assert run_cli("reset-sites-php") == EXIT_OK

        out = capsys.readouterr().out
        assert "=== reset-sites-php: success ===" in out
        assert "backup: " in out and "backup: none" not in out
        registry = Config.from_dict(config_dict).paths.registry_file
        assert "acme.example.test" not in registry.read_text()
        assert "$sites['template.example.test'] = 'template';" in registry.read_text()
