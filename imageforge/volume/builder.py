"""Volume materialization.

This module turns a partition plan and an install payload into a bootable
virtual disk:

- Create and attach the virtual disk, create and format partitions
- Apply the OS payload to the OS partition
- Enable optional features and apply offline update packages
- Carve the Recovery partition and move the recovery image into it
- Write boot files and verify the result

Every resource is registered with the ledger as soon as it exists. The
builder never tears anything down itself; it asks the ledger to.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from imageforge.builds.schema import BuildConfig
from imageforge.config import Settings
from imageforge.errors import StructuralError
from imageforge.ledger.handles import VirtualDiskHandle
from imageforge.ledger.ledger import ResourceLedger
from imageforge.providers import PartitionInfo, ProviderSet
from imageforge.types import (
    FirmwareType,
    PartialFailure,
    PartitionRole,
    PipelineStage,
    UpdateKind,
)
from imageforge.volume.editions import NoMatchingImageError, resolve_image_index
from imageforge.volume.plan import PartitionPlan, build_partition_plan, carve_recovery
from imageforge.volume.updates import UpdatePackage, UpdateReport, order_update_packages

logger = logging.getLogger(__name__)

# Where the applied OS payload keeps its recovery image
RECOVERY_IMAGE_PATH = Path("Windows/System32/Recovery/Winre.wim")

# Where the recovery image lives on the Recovery partition
RECOVERY_TARGET_PATH = Path("Recovery/WindowsRE/Winre.wim")

DISK_FILE_NAME = "volume.vhdx"
DISK_SECTOR_SIZE = 512

Checkpoint = Callable[[], None]


class MissingRecoveryImageError(StructuralError):
    """Raised when a recovery image is required but the payload has none."""

    def __init__(self, expected_path: Path, code: str = "missing_recovery_image") -> None:
        super().__init__(
            f"Recovery image required but not found at {expected_path}; "
            "unset require_recovery or use media that includes one",
            code,
        )
        self.expected_path = expected_path


class VolumeIncompleteError(StructuralError):
    """Raised when a volume fails structural verification."""

    def __init__(self, problems: Sequence[str], code: str = "volume_incomplete") -> None:
        super().__init__("Volume is incomplete: " + "; ".join(problems), code)
        self.problems = list(problems)


@dataclass
class VolumeHandle:
    """A materialized volume on an attached virtual disk.

    Attributes:
        disk: Ledger handle of the attached disk.
        partitions: Created partitions by role.
        plan: Partition plan the volume was built from (None for volumes
            opened from an existing disk).
        image_index: Applied image index.
        enabled_features: Optional features successfully enabled.
        update_report: Outcome of offline update application.
        recovery_image_size: Size of the relocated recovery image.
        boot_files_written: Whether boot files were written.
    """

    disk: VirtualDiskHandle
    partitions: dict[PartitionRole, PartitionInfo] = field(default_factory=dict)
    plan: PartitionPlan | None = None
    image_index: int | None = None
    enabled_features: list[str] = field(default_factory=list)
    update_report: UpdateReport = field(default_factory=UpdateReport)
    recovery_image_size: int | None = None
    boot_files_written: bool = False

    @property
    def path(self) -> Path:
        """Virtual disk file path."""
        return self.disk.path

    @property
    def device_path(self) -> str:
        """Host device path of the attached disk."""
        if self.disk.device_path is None:
            raise VolumeIncompleteError([f"disk {self.disk.path} is not attached"])
        return self.disk.device_path

    def partition(self, role: PartitionRole) -> PartitionInfo:
        """Return the partition with the given role.

        Raises:
            VolumeIncompleteError: If the partition does not exist.
        """
        info = self.partitions.get(role)
        if info is None:
            raise VolumeIncompleteError([f"no {role.value} partition"])
        return info

    def mount_path(self, role: PartitionRole) -> Path:
        """Host mount path of a partition.

        Raises:
            VolumeIncompleteError: If the partition is missing or unmounted.
        """
        info = self.partition(role)
        if info.mount_path is None:
            raise VolumeIncompleteError([f"{role.value} partition is not mounted"])
        return info.mount_path

    @property
    def partial_failures(self) -> list[PartialFailure]:
        """Partial failures recorded while building this volume."""
        return list(self.update_report.failures)


class VolumeBuilder:
    """Builds bootable volumes through the partitioning and imaging providers.

    Args:
        providers: External collaborators.
        ledger: Resource ledger of the current session.
        settings: Application settings.
        work_dir: Per-session working directory.
    """

    def __init__(
        self,
        providers: ProviderSet,
        ledger: ResourceLedger,
        settings: Settings,
        work_dir: Path,
    ) -> None:
        self._providers = providers
        self._ledger = ledger
        self._settings = settings
        self._work_dir = work_dir

    @property
    def disk_path(self) -> Path:
        """Default virtual disk path for this session."""
        return self._work_dir / DISK_FILE_NAME

    # ------------------------------------------------------------------
    # Disk attachment
    # ------------------------------------------------------------------

    def _attach(self, disk_path: Path) -> VirtualDiskHandle:
        device = self._providers.partitioning.attach_disk(disk_path)
        handle = VirtualDiskHandle(path=disk_path, attached=True, device_path=device)
        self._ledger.register(handle)
        logger.debug("Attached %s as %s", disk_path, device)
        return handle

    def attach_volume(self, disk_path: Path) -> VolumeHandle:
        """Attach an existing volume disk and discover its partitions.

        Args:
            disk_path: Virtual disk file.

        Returns:
            VolumeHandle for the attached disk.
        """
        disk = self._attach(disk_path)
        partitions = {
            info.role: info
            for info in self._providers.partitioning.list_partitions(disk.device_path or "")
        }
        logger.info(
            "Opened volume %s (%s)",
            disk_path.name,
            ", ".join(sorted(role.value for role in partitions)),
        )
        return VolumeHandle(disk=disk, partitions=partitions)

    def reattach(self, volume: VolumeHandle) -> VolumeHandle:
        """Re-attach a detached volume, keeping its build state."""
        reopened = self.attach_volume(volume.path)
        volume.disk = reopened.disk
        volume.partitions = reopened.partitions
        return volume

    def detach_volume(self, volume: VolumeHandle) -> None:
        """Detach the volume disk through the ledger."""
        self._ledger.release(volume.disk)
        volume.disk = VirtualDiskHandle(path=volume.path)

    # ------------------------------------------------------------------
    # Build steps
    # ------------------------------------------------------------------

    def resolve_index(self, config: BuildConfig, source_image: Path) -> int:
        """Resolve the image index to apply from the install payload.

        Raises:
            NoMatchingImageError: If the index or edition is not present.
            AmbiguousEditionError: If the edition matches several images.
        """
        images = self._providers.imaging.list_images(source_image)
        if config.image_index is not None:
            if not any(img.index == config.image_index for img in images):
                raise NoMatchingImageError(f"index {config.image_index}", images)
            return config.image_index
        return resolve_image_index(images, config.edition or "", config.release)

    def materialize_volume(
        self,
        plan: PartitionPlan,
        source_image: Path,
        image_index: int,
        compact: bool = False,
    ) -> VolumeHandle:
        """Create the disk, lay out partitions and apply the OS payload.

        Args:
            plan: Partition plan.
            source_image: Install payload (install.wim/esd).
            image_index: Image index to apply.
            compact: Apply in compact mode.

        Returns:
            VolumeHandle for the attached, populated disk.
        """
        partitioning = self._providers.partitioning
        disk_path = self.disk_path
        disk_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(
            "Creating %d MiB virtual disk %s", plan.disk_capacity // (1024 * 1024), disk_path
        )
        partitioning.create_disk(disk_path, plan.disk_capacity, DISK_SECTOR_SIZE)
        self._ledger.register(VirtualDiskHandle(path=disk_path))
        disk = self._attach(disk_path)

        volume = VolumeHandle(disk=disk, plan=plan, image_index=image_index)
        last = plan.partitions[-1]
        for spec in plan.partitions:
            # "Rest of the disk" only for the last partition; earlier ones get
            # their resolved size so the partitions after them still fit
            size = None if spec is last and spec.claims_remaining else plan.resolved_size(spec.role)
            info = partitioning.create_partition(disk.device_path or "", spec.role, size, spec.gpt_type)
            if spec.filesystem:
                info = partitioning.format_volume(
                    info, spec.filesystem, spec.label or spec.role.value
                )
            volume.partitions[spec.role] = info
            logger.debug(
                "Created %s partition #%d (%d bytes)", spec.role.value, info.number, info.size_bytes
            )

        os_path = volume.mount_path(PartitionRole.OS)
        logger.info("Applying image %d of %s to %s", image_index, source_image.name, os_path)
        self._providers.imaging.apply_image(source_image, image_index, os_path, compact)
        return volume

    def enable_features(
        self,
        volume: VolumeHandle,
        features: Iterable[str],
        source: Path | None = None,
    ) -> list[PartialFailure]:
        """Enable optional features offline.

        Args:
            volume: Target volume.
            features: Feature names.
            source: Feature payload source (e.g. the media ``sources/sxs``).

        Returns:
            Features that failed, as partial failures.
        """
        os_path = volume.mount_path(PartitionRole.OS)
        failures: list[PartialFailure] = []
        for feature in sorted(features):
            try:
                self._providers.imaging.enable_feature(os_path, feature, source)
            except Exception as e:
                logger.error("Failed to enable feature %s: %s", feature, e)
                failures.append(PartialFailure(PipelineStage.BUILD_VOLUME.value, feature, str(e)))
                continue
            volume.enabled_features.append(feature)
            logger.info("Enabled feature %s", feature)
        volume.update_report.failures.extend(failures)
        return failures

    def apply_updates(
        self,
        volume: VolumeHandle,
        packages: Sequence[UpdatePackage],
        checkpoint: Checkpoint | None = None,
    ) -> UpdateReport:
        """Apply offline update packages in dependency order.

        A failing package is logged and recorded; the remaining packages are
        still applied.

        Args:
            volume: Target volume.
            packages: Local update packages.
            checkpoint: Called between packages; raises to stop early.

        Returns:
            UpdateReport (also stored on the volume).
        """
        os_path = volume.mount_path(PartitionRole.OS)
        report = volume.update_report
        imaging = self._providers.imaging

        for package in order_update_packages(packages):
            if checkpoint is not None:
                checkpoint()
            logger.info("Applying %s (%s)", package.identifier, package.kind.value)
            try:
                if package.kind == UpdateKind.DRIVER:
                    imaging.inject_driver(os_path, package.path)
                else:
                    imaging.add_package(os_path, package.path)
            except Exception as e:
                logger.error("Update %s failed: %s", package.identifier, e)
                report.failures.append(
                    PartialFailure(PipelineStage.BUILD_VOLUME.value, package.identifier, str(e))
                )
                continue
            report.applied.append(package.identifier)

        logger.info(
            "Applied %d of %d update package(s)", len(report.applied), len(packages)
        )
        return report

    def finalize_volume(
        self,
        volume: VolumeHandle,
        require_recovery: bool = False,
        firmware: FirmwareType = FirmwareType.UEFI,
    ) -> VolumeHandle:
        """Carve the Recovery partition and write boot files.

        Args:
            volume: Volume whose payload has been applied.
            require_recovery: Fail if the payload has no recovery image.
            firmware: Firmware type for boot files.

        Returns:
            The updated volume.

        Raises:
            MissingRecoveryImageError: If required and absent.
            DiskTooSmallError: If the Recovery partition does not fit.
        """
        os_path = volume.mount_path(PartitionRole.OS)
        recovery_image = os_path / RECOVERY_IMAGE_PATH

        if recovery_image.is_file():
            self._place_recovery_image(volume, recovery_image)
        elif require_recovery:
            raise MissingRecoveryImageError(recovery_image)
        else:
            logger.info("No recovery image in payload; skipping Recovery partition")

        system_path = volume.mount_path(PartitionRole.SYSTEM)
        self._providers.partitioning.write_boot_files(os_path, system_path, firmware)
        volume.boot_files_written = True
        logger.info("Boot files written (%s)", firmware.value)
        return volume

    def _place_recovery_image(self, volume: VolumeHandle, recovery_image: Path) -> None:
        partitioning = self._providers.partitioning
        size = recovery_image.stat().st_size
        if volume.plan is None:
            raise VolumeIncompleteError(["volume has no partition plan to carve from"])
        carved = carve_recovery(volume.plan, size)
        recovery_spec = carved.get(PartitionRole.RECOVERY)
        if recovery_spec is None or recovery_spec.size_bytes is None:
            raise VolumeIncompleteError(["recovery partition could not be planned"])

        existing = volume.partitions.get(PartitionRole.RECOVERY)
        if existing is None or existing.size_bytes < recovery_spec.size_bytes:
            donor_role = carved.donor.role
            donor_size = carved.resolved_size(donor_role)
            logger.info(
                "Shrinking %s partition to %d MiB for %d MiB Recovery partition",
                donor_role.value,
                donor_size // (1024 * 1024),
                recovery_spec.size_bytes // (1024 * 1024),
            )
            volume.partitions[donor_role] = partitioning.resize_partition(
                volume.partition(donor_role), donor_size
            )
            if existing is None:
                info = partitioning.create_partition(
                    volume.device_path,
                    PartitionRole.RECOVERY,
                    recovery_spec.size_bytes,
                    recovery_spec.gpt_type,
                )
                info = partitioning.format_volume(
                    info, recovery_spec.filesystem or "NTFS", recovery_spec.label or "Recovery"
                )
            else:
                info = partitioning.resize_partition(existing, recovery_spec.size_bytes)
            volume.partitions[PartitionRole.RECOVERY] = info
        volume.plan = carved

        target = volume.mount_path(PartitionRole.RECOVERY) / RECOVERY_TARGET_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(recovery_image), target)
        volume.recovery_image_size = size
        logger.info("Moved %d byte recovery image to Recovery partition", size)

    def verify_volume(self, volume: VolumeHandle) -> None:
        """Check the volume is structurally complete.

        Raises:
            VolumeIncompleteError: Listing every problem found.
        """
        problems: list[str] = []
        expected = (
            [spec.role for spec in volume.plan.partitions]
            if volume.plan is not None
            else [PartitionRole.SYSTEM, PartitionRole.OS]
        )
        for role in expected:
            if role not in volume.partitions:
                problems.append(f"missing {role.value} partition")
        if not volume.boot_files_written:
            problems.append("boot files not written")
        if not volume.path.is_file():
            problems.append(f"disk file {volume.path} missing")
        if problems:
            raise VolumeIncompleteError(problems)
        logger.info("Volume %s verified", volume.path.name)

    def build(
        self,
        config: BuildConfig,
        source_image: Path,
        packages: Sequence[UpdatePackage],
        feature_source: Path | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> VolumeHandle:
        """Run every build step for a configuration.

        Args:
            config: Build configuration.
            source_image: Install payload.
            packages: Local update packages.
            feature_source: Optional feature payload source.
            checkpoint: Called between steps; raises to stop early.

        Returns:
            Verified VolumeHandle, still attached.
        """

        def check() -> None:
            if checkpoint is not None:
                checkpoint()

        index = self.resolve_index(config, source_image)
        plan = build_partition_plan(
            config.disk_size_bytes,
            reserve_recovery_upfront=self._settings.reserve_recovery_upfront,
            os_size=config.os_size_bytes,
        )
        volume = self.materialize_volume(plan, source_image, index, compact=config.compact)
        check()
        if config.features:
            self.enable_features(volume, config.features, feature_source)
            check()
        if packages:
            self.apply_updates(volume, packages, checkpoint=checkpoint)
        check()
        self.finalize_volume(volume, require_recovery=config.require_recovery)
        self.verify_volume(volume)
        return volume


__all__ = [
    "DISK_FILE_NAME",
    "RECOVERY_IMAGE_PATH",
    "MissingRecoveryImageError",
    "VolumeBuilder",
    "VolumeHandle",
    "VolumeIncompleteError",
]
