"""Backend discovery via Python entry points.

Database servers, lease stores and command runners are registered under
the ``dcloud_core.backends.*`` groups, so third-party packages can ship
their own (a PostgreSQL server, a Redis lease store) without touching
this package.
"""

from importlib.metadata import EntryPoint, entry_points
from typing import Any

from dcloud_core.exceptions import ConfigError
from dcloud_core.protocols import CommandRunner, DatabaseServer, KVStore

BACKEND_GROUPS = {
    "database": ("dcloud_core.backends.database", DatabaseServer),
    "kv": ("dcloud_core.backends.kv", KVStore),
    "runner": ("dcloud_core.backends.runner", CommandRunner),
}


def _entry_points(group: str) -> dict[str, EntryPoint]:
    if group not in BACKEND_GROUPS:
        raise ConfigError(f"Unknown backend group '{group}'")
    return {ep.name: ep for ep in entry_points(group=BACKEND_GROUPS[group][0])}


def discover_backends(group: str) -> dict[str, Any]:
    """Load every backend class registered for ``group`` (database, kv, runner)."""
    return {name: ep.load() for name, ep in _entry_points(group).items()}


def get_backend(group: str, name: str) -> Any:
    """Load one backend class without importing the others.

    Raises:
        ConfigError: If the backend is not registered
    """
    eps = _entry_points(group)
    if name not in eps:
        available = ", ".join(sorted(eps)) or "(none)"
        raise ConfigError(f"Backend '{name}' not found in group '{group}'. Available: {available}")
    return eps[name].load()


def create_backend(group: str, name: str, **kwargs: Any) -> Any:
    """Instantiate a backend and check it implements the group's protocol.

    Raises:
        ConfigError: If the backend is unknown or does not implement the protocol
    """
    instance = get_backend(group, name)(**kwargs)
    protocol = BACKEND_GROUPS[group][1]
    if not isinstance(instance, protocol):
        raise ConfigError(f"Backend '{name}' does not implement {protocol.__name__}")
    return instance


def create_database(backend: str, **kwargs: Any) -> DatabaseServer:
    return create_backend("database", backend, **kwargs)


def create_kv_store(backend: str, **kwargs: Any) -> KVStore:
    return create_backend("kv", backend, **kwargs)


def create_runner(backend: str = "local", **kwargs: Any) -> CommandRunner:
    return create_backend("runner", backend, **kwargs)
