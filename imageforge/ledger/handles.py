"""Resource handles tracked by the ledger.

Each handle is a small frozen record of one externally-created object, with
just enough information to tear it down. Handles serialize to a JSON payload
so the ledger can persist them and rebuild them after a crash.

The naming convention used for every named resource (VMs, shares, accounts,
registry hive mounts) is a versioned constant shared by creation and recovery
code, so recovery cannot silently drift from creation.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, ClassVar

from imageforge.types import ResourceKind

# Bump the version suffix whenever the name format below changes
NAMING_SCHEME = "imgforge-v1"

# Registry hives are mounted under this root key
HIVE_ROOT_KEY = "HKLM"

_NAME_PATTERN = re.compile(
    rf"^{re.escape(NAMING_SCHEME)}-(?P<session>[0-9a-f]{{8}})-(?P<purpose>[a-z0-9\-]+)$"
)


def resource_name(session_id: str, purpose: str) -> str:
    """Build the name of a session-owned resource.

    Args:
        session_id: Session identifier (hex); its first 8 chars are used.
        purpose: Short lowercase purpose tag (e.g. 'vm', 'share').

    Returns:
        Name like 'imgforge-v1-1a2b3c4d-vm'.
    """
    purpose = purpose.lower()
    if not re.fullmatch(r"[a-z0-9\-]+", purpose):
        raise ValueError(f"invalid resource purpose '{purpose}'")
    return f"{NAMING_SCHEME}-{session_id[:8].lower()}-{purpose}"


def is_session_resource_name(name: str) -> bool:
    """Check whether a name follows the session naming convention."""
    return _NAME_PATTERN.match(name) is not None


def hive_mount_key(session_id: str, hive: str) -> str:
    """Build the registry mount key for a loaded hive."""
    return f"{HIVE_ROOT_KEY}\\{resource_name(session_id, hive.lower())}"


def is_session_hive_key(mount_key: str) -> bool:
    """Check whether a hive mount key belongs to any session."""
    root, sep, name = mount_key.partition("\\")
    return bool(sep) and root.upper() == HIVE_ROOT_KEY and is_session_resource_name(name)


@dataclass(frozen=True)
class ResourceHandle:
    """Base class for all resource handles."""

    kind: ClassVar[ResourceKind]

    @property
    def key(self) -> str:
        """Stable identity used for deduplication and deregistration."""
        raise NotImplementedError

    @property
    def description(self) -> str:
        """Human-readable description for logs and reports."""
        return f"{self.kind.value}:{self.key}"

    def to_payload(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        data = asdict(self)
        for name, value in data.items():
            if isinstance(value, Path):
                data[name] = str(value)
        return data

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ResourceHandle:
        """Rebuild a handle from ``to_payload`` output."""
        values: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in payload:
                continue
            value = payload[f.name]
            if value is not None and f.type in ("Path", "Path | None"):
                value = Path(value)
            values[f.name] = value
        return cls(**values)


@dataclass(frozen=True)
class VirtualMachineHandle(ResourceHandle):
    """A virtual machine and its ephemeral credential material."""

    kind: ClassVar[ResourceKind] = ResourceKind.VIRTUAL_MACHINE

    machine_id: str
    name: str
    disk_path: Path | None = None
    credential_path: Path | None = None

    @property
    def key(self) -> str:
        return self.machine_id


@dataclass(frozen=True)
class MountedImageHandle(ResourceHandle):
    """A mounted image (install media or captured artifact)."""

    kind: ClassVar[ResourceKind] = ResourceKind.MOUNTED_IMAGE

    mount_path: Path
    source_path: Path
    discard: bool = True

    @property
    def key(self) -> str:
        return str(self.mount_path)


@dataclass(frozen=True)
class VirtualDiskHandle(ResourceHandle):
    """A virtual disk file, possibly attached to the host."""

    kind: ClassVar[ResourceKind] = ResourceKind.VIRTUAL_DISK

    path: Path
    attached: bool = False
    device_path: str | None = None

    @property
    def key(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class NetworkShareHandle(ResourceHandle):
    """A network share exposing a host directory to the guest."""

    kind: ClassVar[ResourceKind] = ResourceKind.NETWORK_SHARE

    name: str
    path: Path
    account: str | None = None

    @property
    def key(self) -> str:
        return self.name


@dataclass(frozen=True)
class EphemeralAccountHandle(ResourceHandle):
    """A temporary local account bound to a share."""

    kind: ClassVar[ResourceKind] = ResourceKind.EPHEMERAL_ACCOUNT

    name: str
    credential_ref: str | None = None

    @property
    def key(self) -> str:
        return self.name


@dataclass(frozen=True)
class RegistryHiveHandle(ResourceHandle):
    """A registry hive file loaded under a session mount key."""

    kind: ClassVar[ResourceKind] = ResourceKind.REGISTRY_HIVE

    mount_key: str
    hive_file: Path

    @property
    def key(self) -> str:
        return self.mount_key


@dataclass(frozen=True)
class WorkPathHandle(ResourceHandle):
    """A temporary file or directory under the working directory."""

    kind: ClassVar[ResourceKind] = ResourceKind.WORK_PATH

    path: Path

    @property
    def key(self) -> str:
        return str(self.path)


HANDLE_TYPES: dict[ResourceKind, type[ResourceHandle]] = {
    cls.kind: cls
    for cls in (
        VirtualMachineHandle,
        MountedImageHandle,
        VirtualDiskHandle,
        NetworkShareHandle,
        EphemeralAccountHandle,
        RegistryHiveHandle,
        WorkPathHandle,
    )
}


def handle_from_payload(kind: str | ResourceKind, payload: dict[str, Any]) -> ResourceHandle:
    """Rebuild a handle of the given kind from its payload.

    Raises:
        ValueError: If the kind is unknown.
    """
    handle_cls = HANDLE_TYPES[ResourceKind(kind)]
    return handle_cls.from_payload(payload)


__all__ = [
    "HANDLE_TYPES",
    "HIVE_ROOT_KEY",
    "NAMING_SCHEME",
    "EphemeralAccountHandle",
    "MountedImageHandle",
    "NetworkShareHandle",
    "RegistryHiveHandle",
    "ResourceHandle",
    "VirtualDiskHandle",
    "VirtualMachineHandle",
    "WorkPathHandle",
    "handle_from_payload",
    "hive_mount_key",
    "is_session_hive_key",
    "is_session_resource_name",
    "resource_name",
]
