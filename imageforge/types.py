"""Shared type definitions for imageforge.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class SessionStatus(str, Enum):
    """Status of a build session."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class ResourceKind(str, Enum):
    """Kind of external resource tracked by the ledger."""

    VIRTUAL_MACHINE = "virtual_machine"
    MOUNTED_IMAGE = "mounted_image"
    VIRTUAL_DISK = "virtual_disk"
    NETWORK_SHARE = "network_share"
    EPHEMERAL_ACCOUNT = "ephemeral_account"
    REGISTRY_HIVE = "registry_hive"
    WORK_PATH = "work_path"


# Fixed teardown order; releasing out of order risks resource-busy failures
RELEASE_ORDER: tuple[ResourceKind, ...] = (
    ResourceKind.VIRTUAL_MACHINE,
    ResourceKind.MOUNTED_IMAGE,
    ResourceKind.VIRTUAL_DISK,
    ResourceKind.NETWORK_SHARE,
    ResourceKind.EPHEMERAL_ACCOUNT,
    ResourceKind.REGISTRY_HIVE,
    ResourceKind.WORK_PATH,
)


class PartitionRole(str, Enum):
    """Role of a partition in the volume layout."""

    SYSTEM = "system"
    RESERVED = "reserved"
    OS = "os"
    DATA = "data"
    RECOVERY = "recovery"


class FirmwareType(str, Enum):
    """Firmware type for boot file generation."""

    UEFI = "uefi"
    BIOS = "bios"
    ALL = "all"


class PowerState(str, Enum):
    """Virtual machine power state."""

    RUNNING = "running"
    OFF = "off"
    STARTING = "starting"
    STOPPING = "stopping"
    UNKNOWN = "unknown"


class UpdateKind(str, Enum):
    """Category of an offline update package, used for apply ordering."""

    SERVICING_STACK = "servicing_stack"
    FEATURE = "feature"
    OTHER = "other"
    CUMULATIVE = "cumulative"
    DRIVER = "driver"


class PipelineStage(str, Enum):
    """States of the build pipeline."""

    START = "start"
    PREFLIGHT = "preflight"
    RECOVER = "recover"
    ACQUIRE_MEDIA = "acquire_media"
    RESOLVE_VOLUME = "resolve_volume"
    BUILD_VOLUME = "build_volume"
    CUSTOMIZE = "customize"
    CAPTURE = "capture"
    INJECT_DRIVERS = "inject_drivers"
    OPTIMIZE = "optimize"
    FINALIZE = "finalize"
    RELEASE = "release"
    END = "end"


@dataclass
class PartialFailure:
    """A non-fatal failure of one item within a stage."""

    stage: str
    item: str
    error: str


@dataclass
class ArtifactInfo:
    """Information about a finished image artifact."""

    filename: str
    path: str
    size_bytes: int
    sha256: str
    labels: list[str] = field(default_factory=list)


__all__ = [
    "RELEASE_ORDER",
    "ArtifactInfo",
    "FirmwareType",
    "PartialFailure",
    "PartitionRole",
    "PipelineStage",
    "PowerState",
    "ResourceKind",
    "SessionStatus",
    "UpdateKind",
]
