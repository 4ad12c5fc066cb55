"""Tenant listing and per-tenant status reports for the shared host."""

import asyncio
import json
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from dcloud_core.exceptions import TenantNotFoundError
from dcloud_core.models import HostingTier, utc_now
from dcloud_core.observability import get_logger
from dcloud_core.preflight import TEMPLATE_SOURCE
from dcloud_core.provisioning.providers.shared import SETTINGS_FILE, SharedHostProvider
from dcloud_core.utils.formatting import human_size, render_records
from dcloud_core.utils.validation import validate_tenant_name

logger = get_logger(__name__)

LIST_KEYS = ("name", "uri", "status", "size", "database_size", "last_modified")
STATUS_FORMATS = ("table", "json", "summary")
RESERVED_DIRECTORIES = (TEMPLATE_SOURCE, "default")

ACTIVE = "active"
INACTIVE = "inactive"
MISSING = "missing"
MIGRATED = "migrated"


def directory_size(path: Path) -> int:
    """Bytes used by regular files under ``path`` (symlinks not followed)."""
    total = 0
    for root, _, files in os.walk(path):
        for filename in files:
            try:
                stat = os.lstat(os.path.join(root, filename))
            except OSError:
                continue
            total += stat.st_size
    return total


def _modified(path: Path) -> str:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime).strftime("%Y-%m-%d")
    except OSError:
        return "unknown"


@dataclass
class SiteSummary:
    """One row of ``list``."""

    name: str
    uri: str
    status: str
    size: str
    database_size: str
    last_modified: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SiteStatus:
    """Detailed status of one tenant."""

    site_name: str
    site_uri: str
    timestamp: str = field(default_factory=utc_now)
    drupal: dict[str, Any] = field(default_factory=dict)
    database: dict[str, Any] = field(default_factory=dict)
    filesystem: dict[str, Any] = field(default_factory=dict)
    configuration: dict[str, Any] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return (
            self.drupal.get("status") == ACTIVE
            and self.database.get("connection") == "ok"
            and bool(self.configuration.get("settings_file"))
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Inventory:
    """Reads tenant state without modifying anything."""

    def __init__(self, provider: SharedHostProvider) -> None:
        self.provider = provider
        self.config = provider.config
        self.database = provider.database

    async def site_state(self, name: str) -> str:
        directory = self.config.paths.sites_dir / name
        if not directory.is_dir():
            return MISSING
        metadata = self.provider.read_metadata(name)
        if metadata is not None and metadata.hosting_tier != HostingTier.SHARED:
            return MIGRATED
        admin = self.provider.admin(self.provider.environment(name), self.config.domain_for(name))
        return ACTIVE if await admin.bootstrap_ok() else INACTIVE

    def site_names(self) -> list[str]:
        sites_dir = self.config.paths.sites_dir
        if not sites_dir.is_dir():
            return []
        return sorted(
            p.name for p in sites_dir.iterdir()
            if p.is_dir() and p.name not in RESERVED_DIRECTORIES
        )

    async def list_sites(self) -> list[SiteSummary]:
        """Every tenant directory, plus tenant databases with no directory."""
        logger.info("Scanning for sites")
        names = self.site_names()
        prefix = self.config.database.prefix
        orphans = [
            db[len(prefix):]
            for db in await self.database.list_databases(prefix)
            if db[len(prefix):] and db[len(prefix):] not in names
            and db != self.config.database.template_database
        ]

        sites = []
        for name in [*names, *sorted(orphans)]:
            sites.append(await self.summarize(name))
        logger.info(f"Found {len(sites)} sites")
        return sites

    async def summarize(self, name: str) -> SiteSummary:
        directory = self.config.paths.sites_dir / name
        database = self.config.database.database_name(name)
        has_directory = directory.is_dir()
        size = await asyncio.to_thread(directory_size, directory) if has_directory else 0
        db_mb = await self.database.size_mb(database) if await self.database.exists(database) else 0.0
        return SiteSummary(
            name=name,
            uri=self.config.uri_for(name),
            status=await self.site_state(name),
            size=human_size(size) if has_directory else "0",
            database_size=human_size(db_mb * 1024 * 1024) if db_mb else "0",
            last_modified=_modified(directory) if has_directory else "unknown",
        )

    @staticmethod
    def render_sites(sites: list[SiteSummary], fmt: str = "table") -> str:
        return render_records([s.to_dict() for s in sites], LIST_KEYS, fmt)

    async def status(self, name: str) -> SiteStatus:
        """Gather the drupal, database, filesystem and configuration sections.

        Raises:
            InvalidInputError: If the name is malformed
            TenantNotFoundError: If neither the directory nor the database exists
        """
        validate_tenant_name(name)
        directory = self.config.paths.sites_dir / name
        database = self.config.database.database_name(name)
        if not directory.is_dir() and not await self.database.exists(database):
            raise TenantNotFoundError(f"Site '{name}' not found")
        domain = self.config.domain_for(name)
        report = SiteStatus(site_name=name, site_uri=self.config.uri_for(name))

        state = await self.site_state(name)
        version = None
        if state == ACTIVE:
            admin = self.provider.admin(self.provider.environment(name), domain)
            version = await admin.status_field("drupal-version")
        report.drupal = {
            "status": state,
            "bootstrap": "successful" if state == ACTIVE else "failed",
            "version": version,
        }

        if await self.database.exists(database):
            report.database = {
                "connection": "ok",
                "tables": await self.database.table_count(database),
                "size_mb": round(await self.database.size_mb(database), 2),
            }
        else:
            report.database = {"connection": "error", "tables": 0, "size_mb": 0}

        def _size(path: Path) -> str:
            return human_size(directory_size(path)) if path.is_dir() else "0"

        report.filesystem = {
            "public_size": await asyncio.to_thread(_size, directory / "files"),
            "private_size": await asyncio.to_thread(_size, directory / "private"),
            "total_size": await asyncio.to_thread(_size, directory),
        }

        metadata = self.provider.read_metadata(name) if directory.is_dir() else None
        report.configuration = {
            "settings_file": (directory / SETTINGS_FILE).is_file(),
            "space_token": metadata.space_token if metadata else "unknown",
            "created_at": metadata.created_at if metadata else "unknown",
        }
        if metadata and metadata.hosting_tier != HostingTier.SHARED:
            report.configuration["hosting_tier"] = metadata.hosting_tier.value
        return report

    @staticmethod
    def render_status(report: SiteStatus, fmt: str = "table") -> str:
        """Render a status report as table, json or summary.

        Raises:
            ValueError: If ``fmt`` is not one of STATUS_FORMATS
        """
        if fmt == "json":
            return json.dumps(report.to_dict(), indent=2)
        drupal, db = report.drupal, report.database
        if fmt == "summary":
            if drupal.get("status") == ACTIVE and db.get("connection") == "ok":
                return (
                    f"✅ {report.site_name}: HEALTHY (Drupal {drupal.get('version') or 'unknown'}, "
                    f"{db['tables']} tables, {db['size_mb']}MB)"
                )
            if drupal.get("status") == INACTIVE:
                return f"⚠️  {report.site_name}: INACTIVE (Bootstrap: {drupal.get('bootstrap')})"
            return f"❌ {report.site_name}: ERROR (Status: {drupal.get('status')}, DB: {db.get('connection')})"
        if fmt != "table":
            raise ValueError(f"Unknown status format '{fmt}' (expected one of: {', '.join(STATUS_FORMATS)})")

        fs, conf = report.filesystem, report.configuration
        token = str(conf.get("space_token", "unknown"))
        if report.healthy:
            verdict = "Site is healthy and operational"
        elif drupal.get("status") == INACTIVE:
            verdict = "Site is inactive - may need attention"
        else:
            verdict = "Site has issues - requires investigation"
        lines = [
            "=" * 38,
            f"Site Status Report: {report.site_name}",
            "=" * 38,
            "",
            "Site:",
            f"   Name: {report.site_name}",
            f"   URL: {report.site_uri}",
            f"   Status: {drupal.get('status')}",
            "",
            "Drupal:",
            f"   Bootstrap: {drupal.get('bootstrap')}",
            f"   Version: {drupal.get('version') or 'unknown'}",
            "",
            "Database:",
            f"   Connection: {db.get('connection')}",
            f"   Tables: {db.get('tables')}",
            f"   Size: {db.get('size_mb')}MB",
            "",
            "File system:",
            f"   Public Files: {fs.get('public_size')}",
            f"   Private Files: {fs.get('private_size')}",
            f"   Total Size: {fs.get('total_size')}",
            "",
            "Configuration:",
            f"   Settings File: {'true' if conf.get('settings_file') else 'false'}",
            f"   Space Token: {token[:16]}...",
            f"   Created: {conf.get('created_at')}",
            "",
            verdict,
        ]
        return "\n".join(lines)
