"""Partition planning and volume materialization."""

from imageforge.volume.builder import (
    MissingRecoveryImageError,
    VolumeBuilder,
    VolumeHandle,
    VolumeIncompleteError,
)
from imageforge.volume.editions import (
    AmbiguousEditionError,
    NoMatchingImageError,
    resolve_image_index,
)
from imageforge.volume.plan import (
    DiskTooSmallError,
    PartitionPlan,
    PartitionSpec,
    build_partition_plan,
    carve_recovery,
)
from imageforge.volume.updates import UpdatePackage, UpdateReport, order_update_packages

__all__ = [
    "AmbiguousEditionError",
    "DiskTooSmallError",
    "MissingRecoveryImageError",
    "NoMatchingImageError",
    "PartitionPlan",
    "PartitionSpec",
    "UpdatePackage",
    "UpdateReport",
    "VolumeBuilder",
    "VolumeHandle",
    "VolumeIncompleteError",
    "build_partition_plan",
    "carve_recovery",
    "order_update_packages",
    "resolve_image_index",
]
