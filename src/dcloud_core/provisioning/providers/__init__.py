"""Hosting tier providers.

Provides a factory to get the provider for a hosting tier.
"""

import asyncio
from typing import TYPE_CHECKING, Any

from dcloud_core.models import HostingTier
from dcloud_core.provisioning.providers.base import HostingProvider, ProvisionRequest
from dcloud_core.provisioning.providers.shared import SharedHostProvider
from dcloud_core.provisioning.tiers import get_tier

if TYPE_CHECKING:
    from dcloud_core.config import Config
    from dcloud_core.protocols import CommandRunner


def get_provider(
    tier: str | HostingTier,
    config: "Config",
    runner: "CommandRunner",
    **kwargs: Any,
) -> HostingProvider:
    """Get the provider for a hosting tier.

    Args:
        tier: Tier value or alias ("shared", "droplet", "upsun", ...)
        config: Application configuration
        runner: Command runner
        **kwargs: Provider-specific dependencies. The shared provider needs
            ``database`` and ``engine``; remote providers accept ``sleep``
            and the droplet provider an httpx ``transport``.

    Returns:
        HostingProvider implementation

    Raises:
        InvalidInputError: If the tier is unknown
        ConfigError: If the tier is not configured
    """
    resolved = get_tier(tier).tier
    sleep = kwargs.get("sleep", asyncio.sleep)

    if resolved == HostingTier.SHARED:
        return SharedHostProvider(
            config,
            runner,
            kwargs["database"],
            kwargs["engine"],
            encryption=kwargs.get("encryption"),
        )
    elif resolved == HostingTier.DEDICATED_VM:
        from dcloud_core.provisioning.providers.droplet import DropletProvider

        return DropletProvider(config, runner, transport=kwargs.get("transport"), sleep=sleep)
    else:
        from dcloud_core.provisioning.providers.platform import PlatformProvider

        return PlatformProvider(config, runner, sleep=sleep)


__all__ = ["HostingProvider", "ProvisionRequest", "SharedHostProvider", "get_provider"]
