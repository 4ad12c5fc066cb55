"""Base protocol for hosting tier providers.

Defines the interface every tier implements so the transfer engine and the
migration orchestrator can move a tenant between any two of them.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar, runtime_checkable

from dcloud_core.admin_tool import AdminTool
from dcloud_core.exceptions import ProvisioningError
from dcloud_core.models import HostingEnvironment, HostingTier, Tenant

E = TypeVar("E", bound=HostingEnvironment)


@dataclass
class ProvisionRequest:
    """Input for creating a tenant environment on a tier."""

    tenant: str
    domain: str
    size: str | None = None
    region: str | None = None
    options: dict[str, Any] | None = None


@runtime_checkable
class HostingProvider(Protocol):
    """Protocol for hosting tier providers (shared host, DigitalOcean, Upsun)."""

    tier: HostingTier

    async def provision(self, request: ProvisionRequest) -> HostingEnvironment:
        """Create the environment and return its handle."""
        ...

    async def wait_until_ready(self, env: HostingEnvironment) -> HostingEnvironment:
        """Block (bounded) until the environment accepts commands.

        Returns the environment, possibly with fields filled in (address, URL).
        """
        ...

    async def export_database(self, env: HostingEnvironment, path: Path) -> None:
        """Write a gzip-compressed SQL dump to ``path``."""
        ...

    async def export_files(self, env: HostingEnvironment, path: Path) -> None:
        """Write the public files tree as a ``.tar.gz`` to ``path``."""
        ...

    async def import_database(self, env: HostingEnvironment, path: Path) -> None:
        """Replace the environment's database with the gzip SQL dump at ``path``."""
        ...

    async def import_files(self, env: HostingEnvironment, path: Path) -> None:
        """Extract the ``.tar.gz`` at ``path`` into the public files tree."""
        ...

    async def configure(self, env: HostingEnvironment, tenant: Tenant) -> None:
        """Regenerate environment-specific configuration for ``tenant``."""
        ...

    def admin(self, env: HostingEnvironment, domain: str | None = None) -> AdminTool:
        """Admin tool bound to the environment."""
        ...

    def endpoint(self, env: HostingEnvironment, domain: str) -> str:
        """Base URL the environment serves the tenant on."""
        ...

    async def destroy(self, env: HostingEnvironment) -> None:
        """Remove the environment and everything in it."""
        ...


def require_environment(env: HostingEnvironment, env_type: type[E]) -> E:
    """Narrow ``env`` to the handle type a provider works with.

    Raises:
        ProvisioningError: If the handle belongs to another tier
    """
    if not isinstance(env, env_type):
        raise ProvisioningError(f"{type(env).__name__} given where {env_type.__name__} was expected")
    return env
