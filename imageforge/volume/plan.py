"""Partition plan computation.

Layout on a GPT disk, in order:

- System: fixed-size FAT32 boot partition
- Reserved: fixed-size, unformatted
- OS: claims all remaining space (or a fixed size when a Data partition
  follows it)
- Data: optional, claims the remaining space
- Recovery: sized from the recovery image found in the applied OS payload

The Recovery partition is normally added by ``carve_recovery`` after the OS
payload has been applied, because only then is the recovery image size
known. The space comes out of the partition that claims the remaining space.
With ``reserve_recovery_upfront`` the plan instead reserves a fixed estimate
before anything is applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from imageforge.errors import StructuralError
from imageforge.types import PartitionRole

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
GIB = 1024 * MIB

# Partition boundaries are aligned to 1 MiB
ALIGNMENT = MIB

# Primary GPT (with leading alignment gap) plus backup GPT
GPT_OVERHEAD = 2 * MIB

SYSTEM_PARTITION_SIZE = 100 * MIB
RESERVED_PARTITION_SIZE = 16 * MIB

# Free space required inside the Recovery partition beyond the image itself
RECOVERY_MARGIN = 282 * MIB

# Reserved when the recovery partition is planned before the payload is applied
UPFRONT_RECOVERY_ESTIMATE = 1 * GIB

MIN_OS_PARTITION_SIZE = 8 * GIB
MIN_DATA_PARTITION_SIZE = 64 * MIB

GPT_TYPE_ESP = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
GPT_TYPE_MSR = "e3c9e316-0b5c-4db8-817d-f92df00215ae"
GPT_TYPE_BASIC_DATA = "ebd0a0a2-b9e5-4433-87c0-68b6b72699c7"
GPT_TYPE_RECOVERY = "de94bba4-06d1-4d40-a16a-bfd50179d6ac"


class DiskTooSmallError(StructuralError):
    """Raised when the requested layout does not fit on the disk."""

    def __init__(self, message: str, code: str = "disk_too_small") -> None:
        super().__init__(message, code)


def align_up(size: int, alignment: int = ALIGNMENT) -> int:
    """Round ``size`` up to a multiple of ``alignment``."""
    return -(-size // alignment) * alignment


def align_down(size: int, alignment: int = ALIGNMENT) -> int:
    """Round ``size`` down to a multiple of ``alignment``."""
    return (size // alignment) * alignment


def recovery_partition_size(recovery_image_size: int) -> int:
    """Size of a Recovery partition holding an image of the given size."""
    if recovery_image_size < 0:
        raise ValueError("recovery image size must not be negative")
    return align_up(recovery_image_size + RECOVERY_MARGIN)


@dataclass(frozen=True)
class PartitionSpec:
    """One planned partition.

    Attributes:
        role: Partition role.
        size_bytes: Fixed size, or None to claim the remaining space.
        filesystem: Filesystem to format with (None = unformatted).
        gpt_type: GPT partition type GUID.
        label: Volume label.
    """

    role: PartitionRole
    size_bytes: int | None
    filesystem: str | None
    gpt_type: str
    label: str | None = None

    @property
    def claims_remaining(self) -> bool:
        """Whether this partition takes whatever space is left."""
        return self.size_bytes is None


@dataclass(frozen=True)
class PartitionPlan:
    """Ordered partition layout for one disk.

    Exactly one partition claims the remaining space.
    """

    disk_capacity: int
    partitions: tuple[PartitionSpec, ...]

    @property
    def usable_capacity(self) -> int:
        """Capacity available to partitions after GPT overhead."""
        return align_down(self.disk_capacity - GPT_OVERHEAD)

    @property
    def fixed_total(self) -> int:
        """Sum of all fixed-size partitions."""
        return sum(p.size_bytes for p in self.partitions if p.size_bytes is not None)

    @property
    def remaining_bytes(self) -> int:
        """Size of the partition that claims the remaining space."""
        return self.usable_capacity - self.fixed_total

    @property
    def donor(self) -> PartitionSpec:
        """Partition that claims the remaining space."""
        for spec in self.partitions:
            if spec.claims_remaining:
                return spec
        raise ValueError("partition plan has no remaining-space partition")

    @property
    def has_recovery(self) -> bool:
        """Whether the plan includes a Recovery partition."""
        return self.get(PartitionRole.RECOVERY) is not None

    def get(self, role: PartitionRole) -> PartitionSpec | None:
        """Return the partition with the given role, if planned."""
        for spec in self.partitions:
            if spec.role == role:
                return spec
        return None

    def resolved_size(self, role: PartitionRole) -> int:
        """Concrete size of a partition in bytes.

        Raises:
            KeyError: If no partition has the given role.
        """
        spec = self.get(role)
        if spec is None:
            raise KeyError(role.value)
        return self.remaining_bytes if spec.size_bytes is None else spec.size_bytes

    @property
    def total_size(self) -> int:
        """Sum of resolved partition sizes plus GPT overhead."""
        return (
            sum(self.resolved_size(spec.role) for spec in self.partitions) + GPT_OVERHEAD
        )

    def describe(self) -> list[dict[str, object]]:
        """Describe the plan as JSON-compatible dicts."""
        return [
            {
                "role": spec.role.value,
                "size_bytes": self.resolved_size(spec.role),
                "filesystem": spec.filesystem,
                "gpt_type": spec.gpt_type,
                "label": spec.label,
            }
            for spec in self.partitions
        ]


def _check_donor(plan: PartitionPlan) -> None:
    donor = plan.donor
    minimum = (
        MIN_OS_PARTITION_SIZE if donor.role == PartitionRole.OS else MIN_DATA_PARTITION_SIZE
    )
    if plan.remaining_bytes < minimum:
        raise DiskTooSmallError(
            f"Disk of {plan.disk_capacity // MIB} MiB is too small: "
            f"{donor.role.value} partition would get {max(plan.remaining_bytes, 0) // MIB} MiB, "
            f"needs at least {minimum // MIB} MiB"
        )


def _recovery_spec(size_bytes: int) -> PartitionSpec:
    return PartitionSpec(
        role=PartitionRole.RECOVERY,
        size_bytes=size_bytes,
        filesystem="NTFS",
        gpt_type=GPT_TYPE_RECOVERY,
        label="Recovery",
    )


def build_partition_plan(
    disk_capacity: int,
    recovery_image_size_hint: int | None = None,
    *,
    reserve_recovery_upfront: bool = False,
    os_size: int | None = None,
) -> PartitionPlan:
    """Compute the partition plan for a disk.

    Args:
        disk_capacity: Disk capacity in bytes.
        recovery_image_size_hint: Expected recovery image size. Used to
            check early that a Recovery partition will fit, and to size the
            upfront reservation.
        reserve_recovery_upfront: Reserve the Recovery partition now
            instead of carving it after the payload is applied.
        os_size: Fixed OS partition size; a Data partition then claims the
            remaining space.

    Returns:
        PartitionPlan.

    Raises:
        DiskTooSmallError: If the layout does not fit on the disk.
    """
    if disk_capacity <= GPT_OVERHEAD:
        raise DiskTooSmallError(f"Disk capacity {disk_capacity} bytes is too small")

    specs: list[PartitionSpec] = [
        PartitionSpec(
            role=PartitionRole.SYSTEM,
            size_bytes=SYSTEM_PARTITION_SIZE,
            filesystem="FAT32",
            gpt_type=GPT_TYPE_ESP,
            label="System",
        ),
        PartitionSpec(
            role=PartitionRole.RESERVED,
            size_bytes=RESERVED_PARTITION_SIZE,
            filesystem=None,
            gpt_type=GPT_TYPE_MSR,
        ),
    ]

    if os_size is not None:
        os_size = align_up(os_size)
        if os_size < MIN_OS_PARTITION_SIZE:
            raise DiskTooSmallError(
                f"OS partition of {os_size // MIB} MiB is below the "
                f"{MIN_OS_PARTITION_SIZE // MIB} MiB minimum"
            )
        specs.append(
            PartitionSpec(PartitionRole.OS, os_size, "NTFS", GPT_TYPE_BASIC_DATA, "Windows")
        )
        specs.append(
            PartitionSpec(PartitionRole.DATA, None, "NTFS", GPT_TYPE_BASIC_DATA, "Data")
        )
    else:
        specs.append(
            PartitionSpec(PartitionRole.OS, None, "NTFS", GPT_TYPE_BASIC_DATA, "Windows")
        )

    if reserve_recovery_upfront:
        if recovery_image_size_hint is not None:
            reserved = recovery_partition_size(recovery_image_size_hint)
        else:
            reserved = UPFRONT_RECOVERY_ESTIMATE
        specs.append(_recovery_spec(reserved))

    plan = PartitionPlan(disk_capacity=disk_capacity, partitions=tuple(specs))
    _check_donor(plan)

    if recovery_image_size_hint is not None and not reserve_recovery_upfront:
        # Fail now rather than after the payload has been applied
        _check_donor(carve_recovery(plan, recovery_image_size_hint))

    logger.debug(
        "Partition plan for %d MiB disk: %s",
        disk_capacity // MIB,
        ", ".join(
            f"{spec.role.value}={plan.resolved_size(spec.role) // MIB}MiB"
            for spec in plan.partitions
        ),
    )
    return plan


def carve_recovery(plan: PartitionPlan, recovery_image_size: int) -> PartitionPlan:
    """Add a Recovery partition sized from the observed recovery image.

    The space is taken from the partition that claims the remaining space
    (Data if present, otherwise OS). An existing upfront reservation that is
    already large enough is kept as is; a too-small one is enlarged.

    Args:
        plan: Plan whose OS payload has been applied.
        recovery_image_size: Size of the recovery image in bytes.

    Returns:
        New plan including the Recovery partition.

    Raises:
        DiskTooSmallError: If the donor partition would drop below its minimum.
    """
    needed = recovery_partition_size(recovery_image_size)
    existing = plan.get(PartitionRole.RECOVERY)
    if existing is not None and existing.size_bytes is not None and existing.size_bytes >= needed:
        return plan

    if existing is not None:
        specs = tuple(
            replace(spec, size_bytes=needed) if spec.role == PartitionRole.RECOVERY else spec
            for spec in plan.partitions
        )
    else:
        specs = plan.partitions + (_recovery_spec(needed),)

    carved = PartitionPlan(disk_capacity=plan.disk_capacity, partitions=specs)
    _check_donor(carved)
    logger.debug(
        "Carved %d MiB Recovery partition from %s partition",
        needed // MIB,
        carved.donor.role.value,
    )
    return carved


__all__ = [
    "ALIGNMENT",
    "GPT_OVERHEAD",
    "MIB",
    "RECOVERY_MARGIN",
    "RESERVED_PARTITION_SIZE",
    "SYSTEM_PARTITION_SIZE",
    "DiskTooSmallError",
    "PartitionPlan",
    "PartitionSpec",
    "build_partition_plan",
    "carve_recovery",
    "recovery_partition_size",
]
