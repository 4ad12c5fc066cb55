"""Timestamped tenant backups.

Archives are named ``<tenant>_<kind>_<YYYYMMDD_HHMMSS>.tar.gz`` and hold the
site directory under ``<tenant>/``, the database dump as
``<tenant>_database.sql`` and a ``MANIFEST.txt``. Existing archives are
never overwritten.
"""

import asyncio
import re
import shutil
import tarfile
import tempfile
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from dcloud_core.config import Config
from dcloud_core.exceptions import BackupError, DcloudError, TenantNotFoundError
from dcloud_core.models import BackupArtifact, BackupKind
from dcloud_core.observability import Timer, get_logger
from dcloud_core.protocols.database import DatabaseServer
from dcloud_core.utils.formatting import human_size, render_records
from dcloud_core.utils.validation import validate_tenant_name

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
ARCHIVE_RE = re.compile(
    r"^(?P<name>[a-z0-9_-]+)_(?P<kind>full|files|database)_(?P<ts>\d{8}_\d{6})\.tar\.gz$"
)
MANIFEST = "MANIFEST.txt"
LISTING_KEYS = ("tenant_name", "kind", "timestamp", "size", "archive_path")


def archive_name(tenant: str, kind: BackupKind, timestamp: datetime) -> str:
    return f"{tenant}_{kind.value}_{timestamp.strftime(TIMESTAMP_FORMAT)}.tar.gz"


def parse_archive(path: Path) -> BackupArtifact | None:
    """Artifact described by an archive's file name, or None if it is not one."""
    match = ARCHIVE_RE.match(path.name)
    if not match:
        return None
    try:
        timestamp = datetime.strptime(match.group("ts"), TIMESTAMP_FORMAT)
        size = path.stat().st_size
    except (ValueError, OSError):
        return None
    return BackupArtifact(
        tenant_name=match.group("name"),
        kind=BackupKind(match.group("kind")),
        timestamp=timestamp,
        archive_path=str(path),
        size_bytes=size,
    )


class BackupManager:
    """Creates, lists, prunes and restores backup archives."""

    def __init__(
        self,
        config: Config,
        database: DatabaseServer,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config
        self.database = database
        self.clock = clock

    @property
    def backups_dir(self) -> Path:
        return Path(self.config.paths.backups_dir)

    async def create(self, name: str, kind: BackupKind | str = BackupKind.FULL) -> BackupArtifact:
        """Archive a tenant.

        Raises:
            TenantNotFoundError: If the tenant's directory or database is missing
            BackupError: If dumping or archiving fails
        """
        validate_tenant_name(name)
        kind = BackupKind(kind)
        directory = self.config.paths.sites_dir / name
        database = self.config.database.database_name(name)

        if kind.includes_files and not directory.is_dir():
            raise TenantNotFoundError(f"Site directory not found: {directory}")
        if kind.includes_database and not await self.database.exists(database):
            raise TenantNotFoundError(f"Database not found: {database}")

        self.backups_dir.mkdir(parents=True, exist_ok=True)
        timestamp = self.clock().replace(microsecond=0)
        path = self.backups_dir / archive_name(name, kind, timestamp)
        while path.exists():
            timestamp += timedelta(seconds=1)
            path = self.backups_dir / archive_name(name, kind, timestamp)

        logger.info("Creating backup", context={"tenant": name, "kind": kind.value, "archive": str(path)})
        with Timer() as timer, tempfile.TemporaryDirectory(dir=self.backups_dir, prefix=".backup-") as tmp:
            staging = Path(tmp)
            dump = staging / f"{name}_database.sql"
            if kind.includes_database:
                try:
                    await self.database.dump(database, dump)
                except DcloudError as e:
                    raise BackupError(f"Dumping {database} failed: {e}") from e

            manifest = staging / MANIFEST
            manifest.write_text(self._manifest(name, kind, timestamp, directory, database))

            def _archive() -> None:
                partial = staging / path.name
                with tarfile.open(partial, "w:gz") as tar:
                    if kind.includes_files:
                        tar.add(directory, arcname=name)
                    if kind.includes_database:
                        tar.add(dump, arcname=dump.name)
                    tar.add(manifest, arcname=MANIFEST)
                partial.replace(path)

            try:
                await asyncio.to_thread(_archive)
            except (OSError, tarfile.TarError) as e:
                raise BackupError(f"Writing {path} failed: {e}") from e

        artifact = BackupArtifact(
            tenant_name=name,
            kind=kind,
            timestamp=timestamp,
            archive_path=str(path),
            size_bytes=path.stat().st_size,
        )
        logger.info(
            "Backup created",
            context={"archive": str(path), "size": human_size(artifact.size_bytes)},
            duration_ms=timer.duration_ms,
        )
        return artifact

    @staticmethod
    def _manifest(name: str, kind: BackupKind, timestamp: datetime, directory: Path, database: str) -> str:
        lines = [
            f"Tenant: {name}",
            f"Kind: {kind.value}",
            f"Created: {timestamp.strftime('%Y-%m-%d %H:%M:%S')}",
        ]
        if kind.includes_files:
            lines.append(f"Site directory: {directory}")
        if kind.includes_database:
            lines.append(f"Database: {database} -> {name}_database.sql")
        return "\n".join(lines) + "\n"

    def list_backups(self, name: str | None = None) -> list[BackupArtifact]:
        """Archives in the backups directory, newest first."""
        if not self.backups_dir.is_dir():
            return []
        artifacts = [
            artifact
            for artifact in (parse_archive(p) for p in self.backups_dir.iterdir() if p.is_file())
            if artifact is not None and (name is None or artifact.tenant_name == name)
        ]
        return sorted(artifacts, key=lambda a: (a.timestamp, a.archive_path), reverse=True)

    @staticmethod
    def render(artifacts: list[BackupArtifact], fmt: str = "table") -> str:
        records = []
        for artifact in artifacts:
            record = artifact.to_dict()
            record["size"] = human_size(artifact.size_bytes) if fmt == "table" else artifact.size_bytes
            records.append(record)
        return render_records(records, LISTING_KEYS, fmt)

    def cleanup(self, older_than_days: int, name: str | None = None) -> list[BackupArtifact]:
        """Delete archives older than ``older_than_days``.

        Returns:
            The deleted artifacts
        """
        if older_than_days < 0:
            raise ValueError("older_than_days cannot be negative")
        cutoff = self.clock() - timedelta(days=older_than_days)
        deleted = []
        for artifact in self.list_backups(name):
            if artifact.timestamp < cutoff:
                logger.info("Deleting old backup", context={"archive": artifact.archive_path})
                Path(artifact.archive_path).unlink(missing_ok=True)
                deleted.append(artifact)
        return deleted

    async def restore(
        self,
        artifact: BackupArtifact,
        target_directory: Path | None = None,
        target_database: str | None = None,
    ) -> None:
        """Recreate a tenant's site tree and/or database from an archive.

        Args:
            artifact: Archive to restore
            target_directory: Where the site tree goes (must not exist).
                Defaults to the tenant's own directory.
            target_database: Database to recreate and load. Defaults to the
                tenant's own database.

        Raises:
            BackupError: If the archive is unreadable or the target exists
        """
        name = artifact.tenant_name
        target_directory = target_directory or self.config.paths.sites_dir / name
        target_database = target_database or self.config.database.database_name(name)
        if artifact.kind.includes_files and target_directory.exists():
            raise BackupError(f"Restore target already exists: {target_directory}")

        with tempfile.TemporaryDirectory(prefix="dcloud-restore-") as tmp:
            staging = Path(tmp)

            def _extract() -> None:
                with tarfile.open(artifact.archive_path, "r:gz") as tar:
                    tar.extractall(staging, filter="data")

            try:
                await asyncio.to_thread(_extract)
            except (OSError, tarfile.TarError) as e:
                raise BackupError(f"Reading {artifact.archive_path} failed: {e}") from e

            if artifact.kind.includes_files:
                logger.info("Restoring site directory", context={"target": str(target_directory)})
                await asyncio.to_thread(shutil.copytree, staging / name, target_directory, symlinks=True)
            if artifact.kind.includes_database:
                logger.info("Restoring database", context={"database": target_database})
                try:
                    await self.database.recreate(target_database)
                    await self.database.load(target_database, staging / f"{name}_database.sql")
                except DcloudError as e:
                    raise BackupError(f"Restoring {target_database} failed: {e}") from e
