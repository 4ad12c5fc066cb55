"""Tenant provisioning across hosting tiers."""

from dcloud_core.provisioning.compensation import CompensationStack
from dcloud_core.provisioning.tenant import (
    TenantDeletionResult,
    TenantManager,
    TenantProvisionResult,
)
from dcloud_core.provisioning.tiers import get_migration_steps, get_tier

__all__ = [
    "CompensationStack",
    "TenantDeletionResult",
    "TenantManager",
    "TenantProvisionResult",
    "get_migration_steps",
    "get_tier",
]
