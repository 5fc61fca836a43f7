"""Artifact publication and manifest generation.

This module handles:
- Moving the finished artifact into the output directory
- Computing its checksum
- Writing a manifest describing how it was built
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from imageforge.acquisition.fetch import compute_file_sha256
from imageforge.types import ArtifactInfo, PartialFailure

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = "1.0"


def publish_artifact(
    artifact_path: Path,
    output_dir: Path,
    labels: list[str] | None = None,
) -> ArtifactInfo:
    """Move an artifact into ``output_dir`` and describe it.

    Args:
        artifact_path: Finished artifact in the working directory.
        output_dir: Per-session output directory.
        labels: Labels recorded for the artifact.

    Returns:
        ArtifactInfo of the published file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / artifact_path.name
    shutil.move(str(artifact_path), target)

    info = ArtifactInfo(
        filename=target.name,
        path=str(target),
        size_bytes=target.stat().st_size,
        sha256=compute_file_sha256(target),
        labels=list(labels or []),
    )
    logger.info(
        "Published %s (%d bytes, sha256: %s)", target, info.size_bytes, info.sha256[:16] + "..."
    )
    return info


def generate_manifest(
    artifact: ArtifactInfo,
    session_id: str,
    fingerprint: str | None = None,
    config_snapshot: dict[str, Any] | None = None,
    cache_hit: bool = False,
    partial_failures: list[PartialFailure] | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    The manifest contains:
    - The artifact with size and checksum
    - Session identification and fingerprint
    - The configuration the artifact was built from
    - Partial failures recorded during the build

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "generated_at": now.isoformat(),
        "session_id": session_id,
        "artifact": asdict(artifact),
        "cache_hit": cache_hit,
        "partial_failures": [asdict(f) for f in partial_failures or []],
    }

    if fingerprint:
        manifest["fingerprint"] = fingerprint
    if config_snapshot:
        manifest["config"] = config_snapshot
    if extra_metadata:
        manifest["metadata"] = extra_metadata

    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True, default=str)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = ["MANIFEST_NAME", "generate_manifest", "publish_artifact", "write_manifest"]
