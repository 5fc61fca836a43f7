"""Pydantic models for build configuration.

A ``BuildConfig`` is the immutable description of one build request. It is
validated when loaded from YAML/JSON and passed by reference into every
component; nothing mutates it during a build.
"""

import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from imageforge.types import UpdateKind

# Update identifiers look like KB5034441; other identifiers are allowed but
# must be plain tokens so they can be used in file names
UPDATE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")

GIB = 1024 * 1024 * 1024


class UpdateSource(BaseModel):
    """An offline update package to apply to the volume.

    Attributes:
        identifier: Update identifier (e.g. 'KB5034441').
        url: Download URL (mutually exclusive with path).
        path: Local package path (mutually exclusive with url).
        kind: Package category; guessed from the file name when omitted.
        size_bytes: Expected download size, if known.
        sha256: Expected SHA-256 checksum, if known.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    identifier: str = Field(description="Update identifier")
    url: str | None = Field(default=None)
    path: Path | None = Field(default=None)
    kind: UpdateKind | None = Field(default=None)
    size_bytes: int | None = Field(default=None, ge=0)
    sha256: str | None = Field(default=None)

    @field_validator("identifier")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Validate identifier is a plain token and normalize its case."""
        if not UPDATE_ID_PATTERN.match(v):
            raise ValueError(f"invalid update identifier '{v}'")
        return v.upper()

    @model_validator(mode="after")
    def validate_location(self) -> "UpdateSource":
        """Require exactly one of url or path."""
        if (self.url is None) == (self.path is None):
            raise ValueError(
                f"update {self.identifier}: exactly one of url or path is required"
            )
        return self


class DriverSource(BaseModel):
    """A driver package to inject into the captured image."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    url: str | None = None
    path: Path | None = None
    sha256: str | None = None

    @model_validator(mode="after")
    def validate_location(self) -> "DriverSource":
        """Require exactly one of url or path."""
        if (self.url is None) == (self.path is None):
            raise ValueError(f"driver {self.name}: exactly one of url or path is required")
        return self


class BuildConfig(BaseModel):
    """Complete, immutable build request.

    Attributes:
        sku: Product SKU (e.g. 'Professional').
        release: Product release (e.g. '11').
        version: Release version (e.g. '23H2').
        architecture: CPU architecture of the media.
        language: Media language tag.
        edition: Edition name to resolve to an image index.
        image_index: Explicit image index (overrides edition).
        features: Optional features to enable offline.
        updates: Offline update packages.
        drivers: Driver packages injected after capture.
        applications: Applications installed in the guest.
        install_office: Install office suite in the guest.
        guest_updates: Download and install updates inside the guest.
        customization_media: ISO with guest customization payload.
        disk_size_gb: Virtual disk capacity.
        os_size_gb: Fixed OS partition size; the rest of the disk becomes a
            Data partition. The OS partition takes the whole disk if unset.
        label: Label of the captured image.
        compact: Apply the OS payload in compact mode.
        require_recovery: Fail if the payload has no recovery image.
        output_name: File name of the finished artifact.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    sku: str = Field(min_length=1)
    release: str = Field(min_length=1)
    version: str = Field(min_length=1)
    architecture: str = Field(default="amd64")
    language: str = Field(default="en-us")

    edition: str | None = Field(default=None)
    image_index: int | None = Field(default=None, ge=1)

    features: frozenset[str] = Field(default_factory=frozenset)
    updates: tuple[UpdateSource, ...] = Field(default_factory=tuple)
    drivers: tuple[DriverSource, ...] = Field(default_factory=tuple)

    applications: tuple[str, ...] = Field(default_factory=tuple)
    install_office: bool = False
    guest_updates: bool = False
    customization_media: Path | None = None

    disk_size_gb: int = Field(default=64, ge=16, le=2048)
    os_size_gb: int | None = Field(default=None, ge=8)
    label: str | None = None
    compact: bool = False
    require_recovery: bool = False
    output_name: str | None = None

    @model_validator(mode="after")
    def validate_edition_or_index(self) -> "BuildConfig":
        """Require an edition name or an explicit image index."""
        if self.edition is None and self.image_index is None:
            raise ValueError("either edition or image_index must be provided")
        return self

    @model_validator(mode="after")
    def validate_os_size(self) -> "BuildConfig":
        """Leave room for a Data partition next to a fixed OS partition."""
        if self.os_size_gb is not None and self.os_size_gb >= self.disk_size_gb:
            raise ValueError(
                f"os_size_gb ({self.os_size_gb}) must be smaller than "
                f"disk_size_gb ({self.disk_size_gb})"
            )
        return self

    @model_validator(mode="after")
    def validate_unique_updates(self) -> "BuildConfig":
        """Reject duplicate update identifiers."""
        seen: set[str] = set()
        for update in self.updates:
            if update.identifier in seen:
                raise ValueError(f"duplicate update identifier {update.identifier}")
            seen.add(update.identifier)
        return self

    @property
    def requires_customization(self) -> bool:
        """Whether the build must boot a VM to customize the volume."""
        return bool(self.applications) or self.install_office or self.guest_updates

    @property
    def update_ids(self) -> frozenset[str]:
        """Identifiers of the requested updates."""
        return frozenset(u.identifier for u in self.updates)

    @property
    def disk_size_bytes(self) -> int:
        """Virtual disk capacity in bytes."""
        return self.disk_size_gb * GIB

    @property
    def os_size_bytes(self) -> int | None:
        """Fixed OS partition size in bytes, if configured."""
        return self.os_size_gb * GIB if self.os_size_gb is not None else None

    @property
    def effective_label(self) -> str:
        """Label of the captured image."""
        return self.label or f"{self.release} {self.sku} {self.version}"

    @property
    def artifact_name(self) -> str:
        """File name of the finished artifact."""
        if self.output_name:
            return self.output_name
        safe = re.sub(r"[^A-Za-z0-9_.\-]+", "-", f"{self.release}-{self.sku}-{self.version}")
        return f"{safe}-{self.architecture}-{self.language}.wim".lower()


__all__ = ["GIB", "BuildConfig", "DriverSource", "UpdateSource"]
