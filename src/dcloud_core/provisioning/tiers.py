"""Hosting tier definitions and migration step configuration.

Defines the hosting tiers (shared host, dedicated VM, managed platform),
what the control plane calls each of them, and the ordered steps a migration
runs for each target tier.
"""

from dataclasses import dataclass, field
from typing import Any

from dcloud_core.exceptions import InvalidInputError
from dcloud_core.models import HostingTier, MigrationStatus


@dataclass
class TierConfig:
    """Static description of a hosting tier."""

    tier: HostingTier
    display_name: str
    provider: str
    hosting_type: str  # value of spaces.hosting_type in the control plane
    migration_target: bool = False
    aliases: list[str] = field(default_factory=list)
    # Columns set by the manual-remediation statement, formatted with the
    # completion payload
    remediation_columns: dict[str, str] = field(default_factory=dict)


# Tier definitions
HOSTING_TIERS: dict[HostingTier, TierConfig] = {
    HostingTier.SHARED: TierConfig(
        tier=HostingTier.SHARED,
        display_name="Shared host",
        provider="multisite",
        hosting_type="starter",
        aliases=["starter", "multisite"],
    ),
    HostingTier.DEDICATED_VM: TierConfig(
        tier=HostingTier.DEDICATED_VM,
        display_name="Dedicated VM",
        provider="digitalocean",
        hosting_type="standalone",
        migration_target=True,
        aliases=["droplet", "standalone", "digitalocean"],
        remediation_columns={
            "standalone_droplet_id": "{dropletId}",
            "standalone_ip": "{dropletIp}",
            "standalone_region": "{region}",
            "drupal_site_url": "{siteUrl}",
        },
    ),
    HostingTier.MANAGED_PLATFORM: TierConfig(
        tier=HostingTier.MANAGED_PLATFORM,
        display_name="Managed platform",
        provider="upsun",
        hosting_type="growth",
        migration_target=True,
        aliases=["upsun", "growth", "platform"],
        remediation_columns={
            "growth_project_id": "{projectId}",
            "growth_project_name": "{projectName}",
            "growth_region": "{region}",
            "drupal_site_url": "{projectUrl}",
        },
    ),
}


@dataclass
class MigrationStep:
    """Definition of a migration step."""

    id: str
    name: str
    status: MigrationStatus
    fatal: bool = True
    required_tier: HostingTier | None = None


# All migration steps, in execution order
MIGRATION_STEPS: list[MigrationStep] = [
    MigrationStep(id="export", name="Export source data", status=MigrationStatus.TRANSFERRING),
    MigrationStep(id="provision", name="Provision target", status=MigrationStatus.PROVISIONING),
    MigrationStep(id="wait_ready", name="Wait for target", status=MigrationStatus.PROVISIONING),
    MigrationStep(id="import", name="Import data", status=MigrationStatus.TRANSFERRING),
    MigrationStep(id="configure", name="Regenerate configuration", status=MigrationStatus.RECONFIGURING),
    MigrationStep(
        id="rotate_credential",
        name="Rotate service credential",
        status=MigrationStatus.RECONFIGURING,
        fatal=False,
    ),
    MigrationStep(
        id="restart_services",
        name="Restart services",
        status=MigrationStatus.RECONFIGURING,
        fatal=False,
        required_tier=HostingTier.DEDICATED_VM,
    ),
    MigrationStep(id="post_import", name="Post-import commands", status=MigrationStatus.RECONFIGURING, fatal=False),
    MigrationStep(id="verify", name="Verify target", status=MigrationStatus.VERIFYING),
    MigrationStep(id="retire_source", name="Cut over from source", status=MigrationStatus.RECONFIGURING),
    MigrationStep(id="notify", name="Notify control plane", status=MigrationStatus.NOTIFYING, fatal=False),
]


def get_tier(tier: str | HostingTier) -> TierConfig:
    """Get tier configuration by enum value or alias.

    Raises:
        InvalidInputError: If the tier is unknown
    """
    if isinstance(tier, HostingTier):
        return HOSTING_TIERS[tier]
    key = tier.strip().lower().replace("-", "_")
    for config in HOSTING_TIERS.values():
        if key == config.tier.value or key in config.aliases:
            return config
    valid = ", ".join(t.value for t in HOSTING_TIERS)
    raise InvalidInputError(f"Unknown hosting tier '{tier}' (expected one of: {valid})")


def get_migration_steps(target: HostingTier) -> list[MigrationStep]:
    """Migration steps applicable to a target tier, in order."""
    return [
        step for step in MIGRATION_STEPS
        if step.required_tier is None or step.required_tier == target
    ]


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def remediation_sql(tier: HostingTier, machine_name: str, payload: dict[str, Any]) -> str:
    """Statement an operator runs when the control plane never acknowledged."""
    config = HOSTING_TIERS[tier]
    assignments = [f"hosting_type='{config.hosting_type}'"]
    for column, template in config.remediation_columns.items():
        assignments.append(f"{column}='{template.format_map(_Blank(payload))}'")
    return (
        "UPDATE spaces SET "
        + ", ".join(assignments)
        + f" WHERE machine_name='{machine_name}';"
    )
