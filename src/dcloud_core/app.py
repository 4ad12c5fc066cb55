"""Composition root wiring configuration, backends and components together."""

import asyncio
from pathlib import Path
from typing import Any

from dcloud_core.backup import BackupManager
from dcloud_core.config import Config
from dcloud_core.inventory import Inventory
from dcloud_core.locking import TenantLockManager
from dcloud_core.migration import MigrationOrchestrator
from dcloud_core.models import HostingTier
from dcloud_core.notifier import ControlPlaneNotifier
from dcloud_core.observability import Timer, get_logger
from dcloud_core.plugins import create_database, create_kv_store, create_runner
from dcloud_core.preflight import PreflightValidator
from dcloud_core.probe import EndpointProbe
from dcloud_core.protocols import CommandRunner, DatabaseServer, KVStore
from dcloud_core.provisioning.providers import HostingProvider, SharedHostProvider, get_provider
from dcloud_core.provisioning.tenant import TenantManager
from dcloud_core.routing import RoutingRegistrar
from dcloud_core.transfer.engine import DataTransferEngine
from dcloud_core.utils.crypto import TokenEncryption

logger = get_logger(__name__)


class DrupalCloud:
    """Entry point to the tenant lifecycle.

    Example usage:
        cloud = DrupalCloud.from_config("dcloud.yaml")
        async with cloud:
            await cloud.tenants.create("acme", token)
            await cloud.migrations.migrate("acme", "dedicated_vm")

    Backends are resolved through entry points on first use. Tests pass
    ready-made ones (``runner``, ``database``, ``kv``) and HTTP
    ``transport``/``sleep`` overrides through the constructor.
    """

    def __init__(
        self,
        config: Config,
        runner: CommandRunner | None = None,
        database: DatabaseServer | None = None,
        kv: KVStore | None = None,
        **overrides: Any,
    ) -> None:
        self.config = config
        self._runner = runner
        self._database = database
        self._kv = kv
        self._overrides = overrides
        self._providers: dict[HostingTier, HostingProvider] = {}
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, path: str | Path, **kwargs: Any) -> "DrupalCloud":
        """Create an instance from a YAML or JSON configuration file."""
        return cls(Config.from_file(path), **kwargs)

    @classmethod
    def from_env(cls, **kwargs: Any) -> "DrupalCloud":
        return cls(Config.from_env(), **kwargs)

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            self._do_initialize()

    def _do_initialize(self) -> None:
        with Timer() as timer:
            config = self.config
            if self._runner is None:
                self._runner = create_runner("local", default_timeout=config.database.timeout_seconds)
            if self._database is None:
                self._database = create_database(
                    config.database.backend,
                    config=config.database,
                    runner=self._runner,
                    path=config.database.path,
                )
            if self._kv is None:
                self._kv = create_kv_store(config.locking.backend, path=config.paths.locks_dir)

            transport = self._overrides.get("transport")
            sleep = self._overrides.get("sleep", asyncio.sleep)

            self.locks = TenantLockManager(self._kv, ttl=config.locking.lease_seconds)
            self.probe = EndpointProbe(
                timeout=config.serving.probe_timeout_seconds,
                verify_tls=config.serving.verify_tls,
                transport=transport,
                sleep=sleep,
            )
            self.registrar = RoutingRegistrar(config, self._runner, probe=self.probe)
            self.engine = DataTransferEngine(config.paths.workspace_dir)
            self.shared = SharedHostProvider(
                config,
                self._runner,
                self._database,
                self.engine,
                encryption=TokenEncryption(config.encryption_key) if config.encryption_key else None,
            )
            self._providers[HostingTier.SHARED] = self.shared
            self.notifier = ControlPlaneNotifier(config.webhook, transport=transport, sleep=sleep)
            self.backups = BackupManager(config, self._database)
            self.preflight = PreflightValidator(config, self._database, self.registrar)
            self.tenants = TenantManager(
                config,
                self.shared,
                self.preflight,
                self.registrar,
                self.locks,
                self.backups,
                notifier=self.notifier,
                provider_for=self.provider_for,
            )
            self.migrations = MigrationOrchestrator(
                config,
                self.shared,
                self.provider_for,
                self.engine,
                self.registrar,
                self.locks,
                notifier=self.notifier,
                probe=self.probe,
            )
            self.inventory = Inventory(self.shared)
            self._initialized = True

        logger.debug(
            "Backends initialized",
            context={"database": config.database.backend, "locking": config.locking.backend},
            duration_ms=timer.duration_ms,
        )

    def provider_for(self, tier: HostingTier) -> HostingProvider:
        """Provider for ``tier``, created on first use.

        Raises:
            ConfigError: If the tier's credentials are not configured
        """
        if tier not in self._providers:
            self._providers[tier] = get_provider(
                tier,
                self.config,
                self.runner,
                transport=self._overrides.get("transport"),
                sleep=self._overrides.get("sleep", asyncio.sleep),
            )
        return self._providers[tier]

    @property
    def runner(self) -> CommandRunner:
        if self._runner is None:
            raise RuntimeError("DrupalCloud not initialized. Use the async context manager.")
        return self._runner

    @property
    def database(self) -> DatabaseServer:
        if self._database is None:
            raise RuntimeError("DrupalCloud not initialized. Use the async context manager.")
        return self._database

    async def __aenter__(self) -> "DrupalCloud":
        await self._ensure_initialized()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        pass
