"""Read-only checks run before any tenant resource is created."""

from dataclasses import dataclass, field
from pathlib import Path

from dcloud_core.config import Config
from dcloud_core.exceptions import ConflictError, TenantNotFoundError
from dcloud_core.observability import get_logger
from dcloud_core.protocols.database import DatabaseServer
from dcloud_core.routing import RoutingRegistrar
from dcloud_core.utils.validation import validate_access_token, validate_tenant_name

logger = get_logger(__name__)

TEMPLATE_SOURCE = "template"


@dataclass
class SourceTenant:
    """Where a clone copies from."""

    name: str
    directory: Path
    database: str
    is_template: bool


@dataclass
class PreflightReport:
    """Everything the provisioner needs once preflight passed."""

    name: str
    domain: str
    directory: Path
    database: str
    source: SourceTenant | None = None
    conflicts: list[str] = field(default_factory=list)


class PreflightValidator:
    """Validates names and detects directory, database and routing conflicts.

    Performs no writes. A conflict in any one of the three resources is
    reported as a conflict of the whole name.
    """

    def __init__(self, config: Config, database: DatabaseServer, registrar: RoutingRegistrar) -> None:
        self.config = config
        self.database = database
        self.registrar = registrar

    def resolve_source(self, source: str) -> SourceTenant:
        """Locate a source tenant's directory and database.

        Raises:
            TenantNotFoundError: If the source has no site directory
        """
        validate_tenant_name(source, name="source tenant")
        sites_dir = self.config.paths.sites_dir
        if source == TEMPLATE_SOURCE:
            directory = self.config.paths.template_dir
            database = self.config.database.template_database
        else:
            directory = sites_dir / source
            database = self.config.database.database_name(source)

        if not directory.is_dir():
            raise TenantNotFoundError(f"Source tenant '{source}' not found at {directory}")
        return SourceTenant(
            name=source,
            directory=directory,
            database=database,
            is_template=source == TEMPLATE_SOURCE,
        )

    async def find_conflicts(self, name: str) -> list[str]:
        """Existing resources that would collide with ``name``."""
        conflicts = []
        directory = self.config.paths.sites_dir / name
        database = self.config.database.database_name(name)
        domain = self.config.domain_for(name)

        if directory.exists():
            conflicts.append(f"directory {directory}")
        if await self.database.exists(database):
            conflicts.append(f"database {database}")
        if self.registrar.contains(domain):
            conflicts.append(f"routing entry {domain}")
        return conflicts

    async def validate(self, name: str, token: str, source: str | None = None) -> PreflightReport:
        """Validate a proposed tenant.

        Raises:
            InvalidInputError: If the name or token is malformed
            TenantNotFoundError: If ``source`` does not exist
            ConflictError: If any tenant resource already exists
        """
        validate_tenant_name(name, prefix=self.config.database.prefix)
        validate_access_token(token)
        if name == TEMPLATE_SOURCE or name == "default":
            raise ConflictError(name, [f"reserved name '{name}'"])

        resolved = self.resolve_source(source) if source else None

        conflicts = await self.find_conflicts(name)
        if conflicts:
            logger.error("Preflight found conflicts", context={"tenant": name, "conflicts": conflicts})
            raise ConflictError(name, conflicts)

        logger.info("Preflight passed", context={"tenant": name, "source": source})
        return PreflightReport(
            name=name,
            domain=self.config.domain_for(name),
            directory=self.config.paths.sites_dir / name,
            database=self.config.database.database_name(name),
            source=resolved,
        )
