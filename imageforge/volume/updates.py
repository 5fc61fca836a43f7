"""Offline update package classification and ordering.

Packages are applied foundational first: servicing stack updates, then
feature and other updates, then cumulative updates. Driver packages are
injected last. Preview packages are flagged because they are the usual
source of partial failures.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from imageforge.types import PartialFailure, UpdateKind

logger = logging.getLogger(__name__)

APPLY_RANK: dict[UpdateKind, int] = {
    UpdateKind.SERVICING_STACK: 0,
    UpdateKind.FEATURE: 1,
    UpdateKind.OTHER: 1,
    UpdateKind.CUMULATIVE: 2,
    UpdateKind.DRIVER: 3,
}

_SERVICING_STACK = re.compile(r"(servicing[-_ ]?stack|(^|[^a-z])ssu([^a-z]|$))")
_CUMULATIVE = re.compile(r"(cumulative|(^|[^a-z])lcu([^a-z]|$))")
_FEATURE = re.compile(r"(feature|enablement)")
_DRIVER = re.compile(r"(driver|\.inf$)")
_PREVIEW = re.compile(r"preview")


@dataclass(frozen=True)
class UpdatePackage:
    """A local update package ready to apply.

    Attributes:
        identifier: Update identifier (e.g. 'KB5034441').
        path: Local package path.
        kind: Package category.
        preview: Whether the package is a preview release.
    """

    identifier: str
    path: Path
    kind: UpdateKind
    preview: bool = False


@dataclass
class UpdateReport:
    """Outcome of applying update packages to a volume."""

    applied: list[str] = field(default_factory=list)
    failures: list[PartialFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Whether every package applied."""
        return not self.failures

    @property
    def applied_ids(self) -> frozenset[str]:
        """Identifiers of the applied packages."""
        return frozenset(self.applied)


def classify_update(filename: str, declared: UpdateKind | None = None) -> UpdateKind:
    """Guess an update package's category from its file name.

    Args:
        filename: Package file name.
        declared: Category given in the build configuration, if any.

    Returns:
        UpdateKind.
    """
    if declared is not None:
        return declared
    name = filename.lower()
    if _SERVICING_STACK.search(name):
        return UpdateKind.SERVICING_STACK
    if _DRIVER.search(name):
        return UpdateKind.DRIVER
    if _CUMULATIVE.search(name):
        return UpdateKind.CUMULATIVE
    if _FEATURE.search(name):
        return UpdateKind.FEATURE
    return UpdateKind.OTHER


def is_preview(filename: str) -> bool:
    """Check whether a package file name marks a preview release."""
    return _PREVIEW.search(filename.lower()) is not None


def order_update_packages(packages: Iterable[UpdatePackage]) -> list[UpdatePackage]:
    """Order packages for application.

    Servicing stack first, then feature/other, then cumulative, then
    drivers. The input order is kept within a category.

    Args:
        packages: Packages in configuration order.

    Returns:
        Packages in apply order.
    """
    ordered = sorted(packages, key=lambda p: APPLY_RANK[p.kind])
    for package in ordered:
        if package.preview:
            logger.warning("Update %s is a preview release", package.identifier)
    return ordered


__all__ = [
    "APPLY_RANK",
    "UpdatePackage",
    "UpdateReport",
    "classify_update",
    "is_preview",
    "order_update_packages",
]
