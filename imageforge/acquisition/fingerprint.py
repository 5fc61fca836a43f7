"""Configuration fingerprints for cached volumes.

A fingerprint captures every input that affects the content of a patched
base volume: SKU, release, version, enabled features and applied updates.
Sets are normalized (deduplicated, sorted) so two configurations that differ
only in ordering map to the same key.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from imageforge.builds.schema import BuildConfig

# Schema version for fingerprint format; bump when the key format changes
CACHE_KEY_SCHEMA_VERSION = "1"


def _normalize_set(values: Iterable[str], upper: bool = False) -> tuple[str, ...]:
    cleaned = {v.strip().upper() if upper else v.strip() for v in values}
    cleaned.discard("")
    return tuple(sorted(cleaned))


@dataclass(frozen=True)
class BuildFingerprint:
    """Canonical identity of a patched base volume.

    Attributes:
        sku: Edition/SKU identifier (case-insensitive).
        release: Release channel or name.
        version: Version string.
        features: Enabled optional features, normalized.
        updates: Applied update identifiers, normalized upper-case.
    """

    sku: str
    release: str
    version: str
    features: tuple[str, ...] = field(default_factory=tuple)
    updates: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        """Normalize components so equal inputs compare equal."""
        object.__setattr__(self, "sku", self.sku.strip().lower())
        object.__setattr__(self, "release", self.release.strip())
        object.__setattr__(self, "version", self.version.strip())
        object.__setattr__(self, "features", _normalize_set(self.features))
        object.__setattr__(self, "updates", _normalize_set(self.updates, upper=True))

    @classmethod
    def from_config(
        cls,
        config: BuildConfig,
        applied_updates: Iterable[str] | None = None,
    ) -> BuildFingerprint:
        """Create a fingerprint from a build configuration.

        Args:
            config: Build configuration.
            applied_updates: Update identifiers actually applied. Defaults to
                every update the configuration requests.

        Returns:
            BuildFingerprint instance.
        """
        return cls(
            sku=config.sku,
            release=config.release,
            version=config.version,
            features=tuple(config.features),
            updates=tuple(applied_updates if applied_updates is not None else config.update_ids),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BuildFingerprint:
        """Rebuild a fingerprint from ``to_dict`` output."""
        return cls(
            sku=str(data["sku"]),
            release=str(data["release"]),
            version=str(data["version"]),
            features=tuple(data.get("features") or ()),
            updates=tuple(data.get("updates") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "schema_version": CACHE_KEY_SCHEMA_VERSION,
            "sku": self.sku,
            "release": self.release,
            "version": self.version,
            "features": list(self.features),
            "updates": list(self.updates),
        }

    @property
    def key(self) -> str:
        """SHA-256 of the canonical JSON form (``sha256:...``)."""
        canonical_json = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return "sha256:" + hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()

    @property
    def short_key(self) -> str:
        """First 12 hex characters of the key, for display."""
        return self.key.removeprefix("sha256:")[:12]

    def matches(self, other: BuildFingerprint) -> bool:
        """Exact set-equality on every component."""
        return (
            self.sku == other.sku
            and self.release == other.release
            and self.version == other.version
            and set(self.features) == set(other.features)
            and set(self.updates) == set(other.updates)
        )


__all__ = ["CACHE_KEY_SCHEMA_VERSION", "BuildFingerprint"]
