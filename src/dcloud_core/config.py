"""Configuration loading with environment variable substitution."""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

from dcloud_core.exceptions import ConfigError

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


def substitute_env_vars(value: Any) -> Any:
    """Recursively substitute ${VAR_NAME} patterns with environment variables."""
    if isinstance(value, str):
        def replace(match: re.Match[str]) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable {var_name} is not set")
            return env_value

        return ENV_VAR_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute_env_vars(v) for v in value]
    return value


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class PathsConfig(_Frozen):
    """Filesystem layout of the shared host."""

    project_root: str = "/var/www/html"
    backups_dir: str = "/var/www/html/backups"
    template_backup: str = "/var/backups/template-backup.sql"
    workspace_dir: str = "/tmp/dcloud-transfer"
    locks_dir: str = "/var/lib/dcloud/locks"
    service_user: str | None = None  # e.g. www-data
    service_group: str | None = None

    @property
    def sites_dir(self) -> Path:
        return Path(self.project_root) / "web" / "sites"

    @property
    def registry_file(self) -> Path:
        return self.sites_dir / "sites.php"

    @property
    def template_dir(self) -> Path:
        return self.sites_dir / "template"


class DatabaseConfig(_Frozen):
    """Relational database server settings."""

    backend: str = "mysql"  # mysql | sqlite
    host: str = "mariadb"
    port: int = 3306
    root_user: str = "root"
    root_password: str = ""
    app_user: str = "drupal"
    app_password: str = "drupal"
    app_host: str = "%"
    prefix: str = "drupal_"
    template_database: str = "drupal"
    path: str | None = None  # sqlite: directory holding one file per database
    mysql_binary: str = "mysql"
    mysqldump_binary: str = "mysqldump"
    timeout_seconds: int = 1800

    def database_name(self, tenant: str) -> str:
        return f"{self.prefix}{tenant}"


class DrushConfig(_Frozen):
    """Administrative command-line tool settings."""

    path: str = "vendor/bin/drush"
    timeout_seconds: int = 300
    cache_rebuild_timeout_seconds: int = 60


class WebhookConfig(_Frozen):
    """Control-plane notification target."""

    url: str | None = None
    secret: str | None = None
    completion_url: str | None = None
    token: str | None = None
    attempts: int = 5
    base_delay_seconds: float = 2.0
    backoff_factor: float = 2.0
    timeout_seconds: float = 30.0


class DigitalOceanConfig(_Frozen):
    """Dedicated-VM tier settings."""

    api_token: str | None = None
    api_url: str = "https://api.digitalocean.com/v2"
    snapshot_id: str | None = None
    size: str = "s-2vcpu-4gb"
    region: str = "nyc1"
    ssh_key_ids: list[str] = Field(default_factory=list)
    ssh_key_path: str | None = None
    ssh_user: str = "root"
    ssh_attempts: int = 60
    ssh_interval_seconds: float = 5.0
    active_timeout_seconds: float = 300.0
    settle_seconds: float = 0.0
    app_root: str = "/opt/drupalcloud"
    database_name: str = "drupal"
    php_fpm_service: str = "php8.3-fpm"
    web_service: str = "nginx"


class UpsunConfig(_Frozen):
    """Managed-platform tier settings."""

    cli: str = "upsun"
    region: str = "us-2.platform.sh"
    org: str | None = None
    environment: str = "main"
    template_repo: str | None = None
    template_branch: str = "main"
    create_timeout_seconds: int = 120
    deploy_timeout_seconds: float = 600.0
    poll_interval_seconds: float = 30.0
    files_mount: str = "web/sites/default/files"
    console_url: str = "https://console.upsun.com/projects"


class ServingConfig(_Frozen):
    """Serving layer interaction after registry changes."""

    reload_command: list[str] = Field(default_factory=lambda: ["killall", "-USR2", "php-fpm"])
    lint_command: list[str] | None = Field(default_factory=lambda: ["php", "-l"])
    probe_attempts: int = 3
    probe_wait_seconds: float = 2.0
    probe_timeout_seconds: float = 10.0
    verify_tls: bool = True
    probe_path: str = "/user/login"
    scheme: str = "https"


class ProvisioningConfig(_Frozen):
    """Provisioning behaviour."""

    rollback_on_failure: bool = False
    require_backup_on_delete: bool = False


class LockingConfig(_Frozen):
    """Per-tenant advisory lease settings."""

    backend: str = "file"  # file | memory
    lease_seconds: int = 3600


class Config(_Frozen):
    """Main configuration for dcloud-core."""

    domain_suffix: str = "localhost"
    encryption_key: str | None = None
    paths: PathsConfig = Field(default_factory=PathsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    drush: DrushConfig = Field(default_factory=DrushConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    digitalocean: DigitalOceanConfig = Field(default_factory=DigitalOceanConfig)
    upsun: UpsunConfig = Field(default_factory=UpsunConfig)
    serving: ServingConfig = Field(default_factory=ServingConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    locking: LockingConfig = Field(default_factory=LockingConfig)

    def domain_for(self, tenant: str) -> str:
        """Domain a tenant is served on."""
        return f"{tenant}.{self.domain_suffix}"

    def uri_for(self, tenant: str) -> str:
        return f"{self.serving.scheme}://{self.domain_for(tenant)}"

    @classmethod
    def from_file(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML or JSON file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        with path.open() as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            else:
                import json
                data = json.load(f)

        # Substitute environment variables
        data = substitute_env_vars(data)
        return cls.model_validate(_merge(data, _env_overrides()))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Load configuration from a dictionary."""
        data = substitute_env_vars(data)
        return cls.model_validate(data)

    @classmethod
    def from_env(cls) -> "Config":
        """Build configuration from environment variables only."""
        return cls.model_validate(_env_overrides())


# Environment variable -> dotted config path
ENV_OVERRIDES: dict[str, str] = {
    "DOMAIN_SUFFIX": "domain_suffix",
    "DCLOUD_ENCRYPTION_KEY": "encryption_key",
    "DCLOUD_PROJECT_PATH": "paths.project_root",
    "DCLOUD_BACKUPS_DIR": "paths.backups_dir",
    "WEBHOOK_URL": "webhook.url",
    "WEBHOOK_SECRET": "webhook.secret",
    "WEBHOOK_TOKEN": "webhook.token",
    "CONTROL_PLANE_URL": "webhook.completion_url",
    "MYSQL_HOST": "database.host",
    "MYSQL_ROOT_USER": "database.root_user",
    "MYSQL_ROOT_PASSWORD": "database.root_password",
    "MYSQL_USER": "database.app_user",
    "MYSQL_PASSWORD": "database.app_password",
    "DIGITALOCEAN_TOKEN": "digitalocean.api_token",
    "DIGITALOCEAN_SNAPSHOT_ID": "digitalocean.snapshot_id",
    "UPSUN_ORG_ID": "upsun.org",
}


def _env_overrides() -> dict[str, Any]:
    data: dict[str, Any] = {}
    for var, dotted in ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value is None or value == "":
            continue
        node = data
        *parents, leaf = dotted.split(".")
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = value
    return data


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result
