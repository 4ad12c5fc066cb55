"""Generated per-tenant ``settings.php``."""

from dataclasses import dataclass, field
from typing import Any

from dcloud_core.utils.validation import trusted_host_pattern


def php_string(value: str) -> str:
    """Single-quoted PHP string literal."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def php_value(value: Any) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if value is None:
        return "NULL"
    if isinstance(value, (int, float)):
        return str(value)
    return php_string(str(value))


@dataclass
class DatabaseSettings:
    """Connection block for ``$databases['default']['default']``."""

    name: str
    username: str
    password: str
    host: str = "localhost"
    port: int = 3306
    collation: str | None = None

    def render(self) -> str:
        items: list[tuple[str, Any]] = [
            ("database", self.name),
            ("username", self.username),
            ("password", self.password),
            ("prefix", ""),
            ("host", self.host),
            ("port", str(self.port)),
            ("isolation_level", "READ COMMITTED"),
            ("driver", "mysql"),
            ("namespace", "Drupal\\mysql\\Driver\\Database\\mysql"),
            ("autoload", "core/modules/mysql/src/Driver/Database/mysql/"),
        ]
        if self.collation:
            items.append(("collation", self.collation))
        body = "\n".join(f"  {php_string(k)} => {php_value(v)}," for k, v in items)
        return f"$databases['default']['default'] = array (\n{body}\n);"


@dataclass
class SiteSettings:
    """Everything written into a tenant's settings file."""

    site_name: str
    domain: str
    database: DatabaseSettings
    hash_salt: str
    file_public_path: str | None = None
    file_private_path: str | None = None
    config_sync_directory: str | None = None
    space_token: str | None = None
    extra_trusted_hosts: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    include_local: bool = True

    @classmethod
    def for_shared_site(
        cls,
        name: str,
        domain: str,
        database: DatabaseSettings,
        hash_salt: str,
        token: str,
    ) -> "SiteSettings":
        """Layout used for tenants living under ``web/sites/<name>``."""
        return cls(
            site_name=name,
            domain=domain,
            database=database,
            hash_salt=hash_salt,
            file_public_path=f"sites/{name}/files",
            file_private_path=f"sites/{name}/private",
            config_sync_directory=f"sites/{name}/files/config/sync",
            space_token=token,
            extra={"skip_permissions_hardening": True},
        )

    @property
    def trusted_host_patterns(self) -> list[str]:
        return [trusted_host_pattern(self.domain), *self.extra_trusted_hosts]

    def render(self) -> str:
        lines = [
            "<?php",
            "",
            "/**",
            " * @file",
            f" * Site-specific configuration for {self.site_name}.",
            " *",
            " * Generated by dcloud; regenerated on migration.",
            " */",
            "",
            self.database.render(),
            "",
        ]

        def setting(key: str, value: Any) -> None:
            lines.append(f"$settings[{php_string(key)}] = {php_value(value)};")

        if self.config_sync_directory:
            setting("config_sync_directory", self.config_sync_directory)
        if self.file_public_path:
            setting("file_public_path", self.file_public_path)
        if self.file_private_path:
            setting("file_private_path", self.file_private_path)
        setting("hash_salt", self.hash_salt)
        setting("update_free_access", False)

        lines.append("$settings['trusted_host_patterns'] = [")
        lines.extend(f"  {php_string(p)}," for p in self.trusted_host_patterns)
        lines.append("];")

        for key, value in self.extra.items():
            setting(key, value)

        setting("drupalcloud_space_name", self.site_name)
        if self.space_token:
            setting("drupalcloud_space_token", self.space_token)

        if self.include_local:
            lines.extend([
                "",
                "if (file_exists($app_root . '/' . $site_path . '/settings.local.php')) {",
                "  include $app_root . '/' . $site_path . '/settings.local.php';",
                "}",
            ])
        return "\n".join(lines) + "\n"
