"""Tenant data transfer: same-host clones and cross-host moves."""

from dcloud_core.transfer.collation import normalize_collation
from dcloud_core.transfer.engine import DataTransferEngine, TransferReport
from dcloud_core.transfer.workspace import TransferWorkspace

__all__ = [
    "DataTransferEngine",
    "TransferReport",
    "TransferWorkspace",
    "normalize_collation",
]
