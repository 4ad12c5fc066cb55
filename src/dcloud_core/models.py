"""Tenant, environment, backup and migration records."""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


def utc_now() -> str:
    """ISO-8601 UTC timestamp with a ``Z`` suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class HostingTier(str, Enum):
    """Backends a tenant can run on."""

    SHARED = "shared"
    DEDICATED_VM = "dedicated_vm"
    MANAGED_PLATFORM = "managed_platform"


@dataclass
class SharedEnvironment:
    """Tenant hosted as a site directory + database on the shared host."""

    directory_path: str
    database_name: str
    config_file: str

    tier = HostingTier.SHARED

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "directory_path": self.directory_path,
            "database_name": self.database_name,
            "config_file": self.config_file,
        }


@dataclass
class DedicatedVMEnvironment:
    """Tenant hosted on its own virtual machine."""

    instance_id: str
    public_address: str
    region: str
    name: str = ""
    database_name: str = "drupal"
    database_user: str = "drupal"
    database_password: str = ""

    tier = HostingTier.DEDICATED_VM

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "instance_id": self.instance_id,
            "public_address": self.public_address,
            "region": self.region,
            "name": self.name,
            "database_name": self.database_name,
            "database_user": self.database_user,
            "database_password": self.database_password,
        }


@dataclass
class ManagedPlatformEnvironment:
    """Tenant hosted as a managed platform project."""

    project_id: str
    project_url: str
    region: str
    name: str = ""
    environment: str = "main"

    tier = HostingTier.MANAGED_PLATFORM

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "project_id": self.project_id,
            "project_url": self.project_url,
            "region": self.region,
            "name": self.name,
            "environment": self.environment,
        }


HostingEnvironment = Union[SharedEnvironment, DedicatedVMEnvironment, ManagedPlatformEnvironment]

_ENVIRONMENT_TYPES: dict[str, type] = {
    HostingTier.SHARED.value: SharedEnvironment,
    HostingTier.DEDICATED_VM.value: DedicatedVMEnvironment,
    HostingTier.MANAGED_PLATFORM.value: ManagedPlatformEnvironment,
}


def environment_from_dict(data: dict[str, Any]) -> HostingEnvironment:
    """Rebuild an environment from its to_dict() form."""
    data = dict(data)
    tier = data.pop("tier")
    try:
        env_type = _ENVIRONMENT_TYPES[tier]
    except KeyError:
        raise ValueError(f"Unknown hosting tier: {tier}") from None
    return env_type(**data)


@dataclass
class Tenant:
    """One independently addressable content-platform instance."""

    name: str
    access_token: str
    domain: str
    hosting_tier: HostingTier = HostingTier.SHARED
    source_tenant: str | None = None
    created_at: str = field(default_factory=utc_now)
    environment: HostingEnvironment | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "access_token": self.access_token,
            "domain": self.domain,
            "hosting_tier": self.hosting_tier.value,
            "source_tenant": self.source_tenant,
            "created_at": self.created_at,
            "environment": self.environment.to_dict() if self.environment else None,
        }


@dataclass
class TenantMetadata:
    """The per-tenant ``space.json`` record.

    Keys are camelCase because the control plane and the application read
    the same file.
    """

    space_name: str
    space_token: str
    domain: str
    source_space: str | None = None
    created_at: str = field(default_factory=utc_now)
    cloned_from: str | None = None
    database_type: str = "mysql"
    hosting_tier: HostingTier = HostingTier.SHARED
    environment: dict[str, Any] | None = None
    retired_environments: list[dict[str, Any]] = field(default_factory=list)
    credential_rotated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the on-disk JSON shape."""
        data: dict[str, Any] = {
            "spaceName": self.space_name,
            "spaceToken": self.space_token,
            "domain": self.domain,
            "sourceSpace": self.source_space,
            "createdAt": self.created_at,
            "clonedFrom": self.cloned_from,
            "databaseType": self.database_type,
        }
        if self.hosting_tier != HostingTier.SHARED:
            data["hostingTier"] = self.hosting_tier.value
        if self.environment:
            data["environment"] = self.environment
        if self.retired_environments:
            data["retiredEnvironments"] = self.retired_environments
        if self.credential_rotated_at:
            data["credentialRotatedAt"] = self.credential_rotated_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TenantMetadata":
        """Create from the on-disk JSON shape."""
        return cls(
            space_name=data["spaceName"],
            space_token=data.get("spaceToken", ""),
            domain=data.get("domain", ""),
            source_space=data.get("sourceSpace"),
            created_at=data.get("createdAt") or utc_now(),
            cloned_from=data.get("clonedFrom"),
            database_type=data.get("databaseType", "mysql"),
            hosting_tier=HostingTier(data.get("hostingTier", HostingTier.SHARED.value)),
            environment=data.get("environment"),
            retired_environments=list(data.get("retiredEnvironments", [])),
            credential_rotated_at=data.get("credentialRotatedAt"),
        )


@dataclass(frozen=True)
class RoutingEntry:
    """One domain -> tenant directory mapping."""

    domain: str
    tenant_directory: str


class BackupKind(str, Enum):
    """What a backup archive contains."""

    FULL = "full"
    FILES = "files"
    DATABASE = "database"

    @property
    def includes_files(self) -> bool:
        return self in (BackupKind.FULL, BackupKind.FILES)

    @property
    def includes_database(self) -> bool:
        return self in (BackupKind.FULL, BackupKind.DATABASE)


@dataclass(frozen=True)
class BackupArtifact:
    """An immutable, timestamped archive of a tenant's data."""

    tenant_name: str
    kind: BackupKind
    timestamp: datetime
    archive_path: str
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_name": self.tenant_name,
            "kind": self.kind.value,
            "timestamp": self.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            "archive_path": self.archive_path,
            "size_bytes": self.size_bytes,
        }


class MigrationStatus(str, Enum):
    """Migration job states."""

    PROVISIONING = "Provisioning"
    TRANSFERRING = "Transferring"
    RECONFIGURING = "Reconfiguring"
    VERIFYING = "Verifying"
    NOTIFYING = "Notifying"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class MigrationJob:
    """Tracks one tenant migration for the duration of the run."""

    tenant: str
    source_environment: HostingEnvironment
    target_tier: HostingTier
    target_environment: HostingEnvironment | None = None
    steps_completed: list[str] = field(default_factory=list)
    status: MigrationStatus = MigrationStatus.PROVISIONING
    error: str | None = None
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "tenant": self.tenant,
            "source_environment": self.source_environment.to_dict(),
            "target_tier": self.target_tier.value,
            "target_environment": (
                self.target_environment.to_dict() if self.target_environment else None
            ),
            "steps_completed": self.steps_completed,
            "status": self.status.value,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "warnings": self.warnings,
        }
