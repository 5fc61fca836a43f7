"""External collaborator interfaces.

The core consumes imaging, virtualization, partitioning, host and media
services only through the protocols below. Concrete implementations live
outside this package and are plugged in through ``Settings.providers``, a
``module:callable`` reference returning a ``ProviderSet``.

Pre-flight checks run against the same providers before any resource is
created, so a missing tool or platform feature never needs cleanup.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from imageforge.errors import FatalEnvironmentError
from imageforge.types import FirmwareType, PartitionRole, PowerState

if TYPE_CHECKING:
    from imageforge.builds.schema import BuildConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaSelector:
    """Selects installation media."""

    release: str
    version: str
    architecture: str
    language: str


@dataclass(frozen=True)
class MediaSource:
    """Location of installation media.

    Exactly one of ``path`` (already local) or ``url`` (needs acquisition)
    is set.
    """

    filename: str
    path: Path | None = None
    url: str | None = None
    size_bytes: int | None = None
    sha256: str | None = None

    def __post_init__(self) -> None:
        """Validate that exactly one location is given."""
        if (self.path is None) == (self.url is None):
            raise ValueError("exactly one of path or url must be provided")

    @property
    def is_iso(self) -> bool:
        """Whether the media is a disc image that must be mounted."""
        return self.filename.lower().endswith(".iso")


@dataclass(frozen=True)
class ImageInfo:
    """One image inside an install payload (install.wim/esd)."""

    index: int
    name: str
    description: str = ""
    size_bytes: int = 0


@dataclass(frozen=True)
class MountInfo:
    """A mounted image reported by the imaging tool."""

    mount_path: Path
    source_path: Path


@dataclass(frozen=True)
class PartitionInfo:
    """A created partition."""

    number: int
    role: PartitionRole
    size_bytes: int
    device_path: str
    mount_path: Path | None = None


@runtime_checkable
class MediaProvider(Protocol):
    """Locates installation media."""

    def locate(self, selector: MediaSelector) -> MediaSource: ...


@runtime_checkable
class ImagingTool(Protocol):
    """Offline image servicing and capture."""

    def check_available(self) -> None: ...

    def list_images(self, image_path: Path) -> list[ImageInfo]: ...

    def apply_image(
        self, source_path: Path, index: int, target_path: Path, compact: bool
    ) -> None: ...

    def mount_image(self, image_path: Path, index: int | None, mount_path: Path) -> Path: ...

    def dismount_image(self, mount_path: Path, commit: bool) -> None: ...

    def list_mounts(self) -> list[MountInfo]: ...

    def add_package(self, target_path: Path, package_path: Path) -> None: ...

    def inject_driver(self, mount_path: Path, driver_path: Path) -> None: ...

    def enable_feature(
        self, target_path: Path, feature: str, source_path: Path | None
    ) -> None: ...

    def capture_volume(self, device_path: str, output_path: Path, label: str) -> Path: ...

    def optimize_artifact(self, artifact_path: Path) -> None: ...


@runtime_checkable
class VirtualizationProvider(Protocol):
    """Virtual machine lifecycle."""

    def check_available(self) -> None: ...

    def create_machine(
        self, name: str, disk_path: Path, memory_mb: int, cpu_count: int
    ) -> str: ...

    def attach_media(self, machine_id: str, iso_path: Path) -> None: ...

    def set_boot_order(self, machine_id: str, devices: list[str]) -> None: ...

    def configure_secure_boot_and_tpm(self, machine_id: str) -> Path | None: ...

    def start(self, machine_id: str) -> None: ...

    def stop(self, machine_id: str, force: bool) -> None: ...

    def power_state(self, machine_id: str) -> PowerState: ...

    def remove(self, machine_id: str) -> None: ...

    def list_machines(self) -> dict[str, str]: ...


@runtime_checkable
class PartitioningProvider(Protocol):
    """Virtual disk and partition management."""

    def check_available(self) -> None: ...

    def create_disk(self, path: Path, size_bytes: int, sector_size: int) -> None: ...

    def attach_disk(self, path: Path) -> str: ...

    def detach_disk(self, path: Path) -> None: ...

    def list_attached_disks(self) -> list[Path]: ...

    def list_partitions(self, device_path: str) -> list[PartitionInfo]: ...

    def create_partition(
        self, device_path: str, role: PartitionRole, size_bytes: int | None, gpt_type: str
    ) -> PartitionInfo: ...

    def resize_partition(self, partition: PartitionInfo, size_bytes: int) -> PartitionInfo: ...

    def format_volume(
        self, partition: PartitionInfo, filesystem: str, label: str
    ) -> PartitionInfo: ...

    def write_boot_files(
        self, os_path: Path, system_path: Path, firmware: FirmwareType
    ) -> None: ...


@runtime_checkable
class HostProvider(Protocol):
    """Host-level shares, accounts and registry hives."""

    def create_share(self, name: str, path: Path, account: str) -> None: ...

    def remove_share(self, name: str) -> None: ...

    def list_shares(self) -> dict[str, Path]: ...

    def create_account(self, name: str) -> str: ...

    def remove_account(self, name: str) -> None: ...

    def list_accounts(self) -> list[str]: ...

    def load_hive(self, mount_key: str, hive_file: Path) -> None: ...

    def unload_hive(self, mount_key: str) -> None: ...

    def list_hives(self) -> dict[str, Path]: ...

    def set_registry_value(self, mount_key: str, key: str, name: str, value: str) -> None: ...


@dataclass(frozen=True)
class ProviderSet:
    """Bundle of the collaborators a build needs."""

    media: MediaProvider
    imaging: ImagingTool
    virtualization: VirtualizationProvider
    partitioning: PartitioningProvider
    host: HostProvider


class ProviderLoadError(FatalEnvironmentError):
    """Raised when the configured provider factory cannot be loaded."""

    def __init__(self, message: str, code: str = "provider_load_error") -> None:
        super().__init__(message, code)


def load_providers(reference: str | None) -> ProviderSet:
    """Load a ProviderSet from a ``module:callable`` reference.

    Args:
        reference: Factory reference, e.g. ``"mysite.providers:create"``.

    Returns:
        ProviderSet produced by the factory.

    Raises:
        ProviderLoadError: If the reference is missing, malformed, cannot be
            imported, or does not produce a ProviderSet.
    """
    if not reference:
        raise ProviderLoadError(
            "No providers configured; set IMGFORGE_PROVIDERS to 'module:callable'",
            code="providers_not_configured",
        )

    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise ProviderLoadError(
            f"Invalid provider reference '{reference}', expected 'module:callable'"
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ProviderLoadError(f"Cannot import provider module '{module_name}': {e}") from e

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ProviderLoadError(f"'{reference}' is not a callable")

    providers = factory()
    if not isinstance(providers, ProviderSet):
        raise ProviderLoadError(
            f"'{reference}' returned {type(providers).__name__}, expected ProviderSet"
        )
    return providers


def run_preflight(providers: ProviderSet, config: BuildConfig) -> None:
    """Detect fatal environmental problems before any resource is created.

    Args:
        providers: Collaborators to check.
        config: Build configuration (decides whether virtualization is needed).

    Raises:
        FatalEnvironmentError: If a required tool or feature is unavailable.
    """
    checks: list[tuple[str, object]] = [
        ("imaging tool", providers.imaging),
        ("partitioning provider", providers.partitioning),
    ]
    if config.requires_customization:
        checks.append(("virtualization provider", providers.virtualization))

    for name, provider in checks:
        logger.debug("Pre-flight check: %s", name)
        try:
            provider.check_available()  # type: ignore[attr-defined]
        except FatalEnvironmentError:
            raise
        except Exception as e:
            raise FatalEnvironmentError(
                f"Pre-flight check failed for {name}: {e}",
                code="preflight_failed",
            ) from e

    logger.info("Pre-flight checks passed (%d provider(s))", len(checks))


__all__ = [
    "HostProvider",
    "ImageInfo",
    "ImagingTool",
    "MediaProvider",
    "MediaSelector",
    "MediaSource",
    "MountInfo",
    "PartitionInfo",
    "PartitioningProvider",
    "ProviderLoadError",
    "ProviderSet",
    "VirtualizationProvider",
    "load_providers",
    "run_preflight",
]
