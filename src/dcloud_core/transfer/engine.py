"""Moves tenant databases and files between locations."""

import asyncio
import shutil
from collections.abc import Awaitable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from dcloud_core.exceptions import DcloudError, TransferError
from dcloud_core.models import HostingEnvironment
from dcloud_core.observability import Timer, get_logger
from dcloud_core.protocols.database import DatabaseServer
from dcloud_core.transfer import workspace as stages
from dcloud_core.transfer.collation import DEFAULT_REPLACEMENTS, normalize_collation
from dcloud_core.transfer.workspace import TransferWorkspace

if TYPE_CHECKING:
    from dcloud_core.provisioning.providers.base import HostingProvider

logger = get_logger(__name__)


def environment_key(env: HostingEnvironment) -> str:
    """Stable identity of an environment for resume bookkeeping."""
    data = env.to_dict()
    return ":".join(
        str(data.get(k)) for k in ("tier", "directory_path", "instance_id", "project_id") if data.get(k)
    )


@dataclass
class TransferReport:
    """What a transfer moved and what it could skip."""

    database_bytes: int = 0
    files_bytes: int = 0
    collation_replacements: int = 0
    skipped_stages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "database_bytes": self.database_bytes,
            "files_bytes": self.files_bytes,
            "collation_replacements": self.collation_replacements,
            "skipped_stages": self.skipped_stages,
        }


class DataTransferEngine:
    """Same-host clones and resumable cross-host transfers."""

    def __init__(
        self,
        workspace_root: str | Path,
        replacements: dict[str, str] | None = None,
    ) -> None:
        self.workspace_root = Path(workspace_root)
        self.replacements = replacements or DEFAULT_REPLACEMENTS

    def workspace(self, tenant: str, source: HostingEnvironment) -> TransferWorkspace:
        ws = TransferWorkspace(path=self.workspace_root / tenant, source=environment_key(source))
        ws.prepare()
        return ws

    # -- same host -----------------------------------------------------

    async def clone_database(self, server: DatabaseServer, source: str, target: str) -> None:
        """Stream ``source`` into the freshly created ``target``."""
        logger.info("Cloning database", context={"source": source, "target": target})
        with Timer() as timer:
            try:
                await server.clone(source, target)
            except DcloudError as e:
                raise TransferError(f"Database clone {source} -> {target} failed: {e}") from e
        logger.info("Database cloned", context={"target": target}, duration_ms=timer.duration_ms)

    async def restore_database(
        self,
        server: DatabaseServer,
        backup: Path,
        target: str,
        regenerate_from: str | None = None,
    ) -> None:
        """Load a precomputed dump into ``target``.

        Args:
            server: Database server
            backup: Dump file
            target: Existing, empty database
            regenerate_from: Database to dump into ``backup`` if it is missing
        """
        if not backup.exists():
            if regenerate_from is None:
                raise TransferError(f"Backup file not found: {backup}")
            logger.warning(
                "Template backup missing, regenerating",
                context={"backup": str(backup), "source": regenerate_from},
            )
            backup.parent.mkdir(parents=True, exist_ok=True)
            try:
                await server.dump(regenerate_from, backup)
            except DcloudError as e:
                backup.unlink(missing_ok=True)
                raise TransferError(f"Could not regenerate {backup}: {e}") from e

        logger.info("Restoring database", context={"backup": str(backup), "target": target})
        try:
            await server.load(target, backup)
        except DcloudError as e:
            raise TransferError(f"Restoring {backup} into {target} failed: {e}") from e

    async def copy_tree(self, source: Path, target: Path) -> None:
        """Copy a site directory, preserving symlinks."""
        if target.exists():
            raise TransferError(f"Target directory already exists: {target}")
        logger.info("Copying directory", context={"source": str(source), "target": str(target)})
        try:
            await asyncio.to_thread(shutil.copytree, source, target, symlinks=True)
        except OSError as e:
            raise TransferError(f"Copying {source} -> {target} failed: {e}") from e

    # -- cross host ----------------------------------------------------

    async def export(
        self,
        provider: "HostingProvider",
        env: HostingEnvironment,
        ws: TransferWorkspace,
        report: TransferReport | None = None,
    ) -> TransferReport:
        """Export database and files of ``env`` into the workspace."""
        report = report or TransferReport()

        if ws.is_done(stages.DATABASE_EXPORTED):
            report.skipped_stages.append(stages.DATABASE_EXPORTED)
        else:
            await self._stage("Exporting database", provider.export_database(env, ws.database_dump))
            ws.mark(stages.DATABASE_EXPORTED, bytes=ws.database_dump.stat().st_size)

        if ws.is_done(stages.DATABASE_NORMALIZED):
            report.skipped_stages.append(stages.DATABASE_NORMALIZED)
            report.collation_replacements = ws.stage_info(stages.DATABASE_NORMALIZED).get("replacements", 0)
        else:
            try:
                count = await asyncio.to_thread(
                    normalize_collation, ws.database_dump, ws.normalized_dump, self.replacements
                )
            except (OSError, EOFError) as e:
                raise TransferError(f"Collation normalization failed: {e}") from e
            report.collation_replacements = count
            ws.mark(stages.DATABASE_NORMALIZED, replacements=count)
            logger.info("Collation normalized", context={"replacements": count})
        report.database_bytes = ws.normalized_dump.stat().st_size

        if ws.is_done(stages.FILES_EXPORTED):
            report.skipped_stages.append(stages.FILES_EXPORTED)
        else:
            await self._stage("Exporting files", provider.export_files(env, ws.files_archive))
            ws.mark(stages.FILES_EXPORTED, bytes=ws.files_archive.stat().st_size)
        report.files_bytes = ws.files_archive.stat().st_size
        return report

    async def import_into(
        self,
        provider: "HostingProvider",
        env: HostingEnvironment,
        ws: TransferWorkspace,
        report: TransferReport | None = None,
    ) -> TransferReport:
        """Import workspace artifacts into ``env``."""
        report = report or TransferReport()
        target = environment_key(env)

        if ws.is_done(stages.DATABASE_IMPORTED, target=target):
            report.skipped_stages.append(stages.DATABASE_IMPORTED)
        else:
            await self._stage("Importing database", provider.import_database(env, ws.normalized_dump))
            ws.mark(stages.DATABASE_IMPORTED, target=target)

        if ws.is_done(stages.FILES_IMPORTED, target=target):
            report.skipped_stages.append(stages.FILES_IMPORTED)
        else:
            await self._stage("Importing files", provider.import_files(env, ws.files_archive))
            ws.mark(stages.FILES_IMPORTED, target=target)
        return report

    async def _stage(self, label: str, operation: Awaitable[None]) -> None:
        logger.info(label)
        with Timer() as timer:
            try:
                await operation
            except TransferError:
                raise
            except (DcloudError, OSError) as e:
                raise TransferError(f"{label} failed: {e}") from e
        logger.info(f"{label} done", duration_ms=timer.duration_ms)
