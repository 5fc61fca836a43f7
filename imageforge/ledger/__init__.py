"""Resource ledger, session marker and crash recovery."""

from imageforge.ledger.handles import (
    EphemeralAccountHandle,
    MountedImageHandle,
    NetworkShareHandle,
    RegistryHiveHandle,
    ResourceHandle,
    VirtualDiskHandle,
    VirtualMachineHandle,
    WorkPathHandle,
    hive_mount_key,
    resource_name,
)
from imageforge.ledger.ledger import ReleaseFailure, ReleaseReport, ResourceLedger
from imageforge.ledger.marker import (
    SessionActiveError,
    SessionMarker,
    StaleSessionError,
)

__all__ = [
    "EphemeralAccountHandle",
    "MountedImageHandle",
    "NetworkShareHandle",
    "RegistryHiveHandle",
    "ReleaseFailure",
    "ReleaseReport",
    "ResourceHandle",
    "ResourceLedger",
    "SessionActiveError",
    "SessionMarker",
    "StaleSessionError",
    "VirtualDiskHandle",
    "VirtualMachineHandle",
    "WorkPathHandle",
    "hive_mount_key",
    "resource_name",
]
