"""dcloud-core - lifecycle orchestration for multi-tenant Drupal spaces."""

from dcloud_core.app import DrupalCloud
from dcloud_core.backup import BackupManager
from dcloud_core.config import Config
from dcloud_core.exceptions import DcloudError
from dcloud_core.inventory import Inventory
from dcloud_core.migration import MigrationOrchestrator
from dcloud_core.models import BackupArtifact, BackupKind, HostingTier, MigrationJob, MigrationStatus, Tenant
from dcloud_core.observability import (
    LogLevel,
    OperationContext,
    StructuredLogger,
    Timer,
    configure_logging,
    get_logger,
)
from dcloud_core.provisioning.tenant import TenantManager

__version__ = "0.1.0"
__all__ = [
    # Core
    "Config",
    "DcloudError",
    "DrupalCloud",
    # Lifecycle
    "BackupManager",
    "Inventory",
    "MigrationOrchestrator",
    "TenantManager",
    # Models
    "BackupArtifact",
    "BackupKind",
    "HostingTier",
    "MigrationJob",
    "MigrationStatus",
    "Tenant",
    # Observability
    "LogLevel",
    "OperationContext",
    "StructuredLogger",
    "Timer",
    "configure_logging",
    "get_logger",
]
