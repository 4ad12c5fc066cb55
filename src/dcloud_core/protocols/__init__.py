"""Protocol interfaces for pluggable backends."""

from dcloud_core.protocols.database import DatabaseServer
from dcloud_core.protocols.kv_store import KVStore
from dcloud_core.protocols.runner import CommandResult, CommandRunner

__all__ = [
    "CommandResult",
    "CommandRunner",
    "DatabaseServer",
    "KVStore",
]
