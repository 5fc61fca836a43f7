"""Tests for artifact publication and manifests."""

import hashlib
import json

from imageforge.pipeline.finalize import (
    MANIFEST_NAME,
    generate_manifest,
    publish_artifact,
    write_manifest,
)
from imageforge.types import PartialFailure


class TestPublishArtifact:
    """Tests for publish_artifact."""

    def test_moves_and_describes(self, tmp_path):
        """The artifact should move into the output dir with its checksum."""
        artifact = tmp_path / "work" / "11-professional-23h2-amd64-en-us.wim"
        artifact.parent.mkdir()
        artifact.write_bytes(b"image")

        info = publish_artifact(artifact, tmp_path / "out", labels=["11 Professional 23H2"])

        assert not artifact.exists()
        assert info.path == str(tmp_path / "out" / artifact.name)
        assert info.size_bytes == 5
        assert info.sha256 == hashlib.sha256(b"image").hexdigest()
        assert info.labels == ["11 Professional 23H2"]


class TestManifest:
    """Tests for generate_manifest and write_manifest."""

    def test_manifest_content(self, tmp_path):
        """Manifests carry the artifact, session and partial failures."""
        artifact = tmp_path / "a.wim"
        artifact.write_bytes(b"x")
        info = publish_artifact(artifact, tmp_path / "out")

        manifest = generate_manifest(
            info,
            session_id="abc",
            fingerprint="sha256:123",
            config_snapshot={"sku": "Professional"},
            cache_hit=True,
            partial_failures=[PartialFailure("build_volume", "KB1", "failed")],
        )

        assert manifest["session_id"] == "abc"
        assert manifest["fingerprint"] == "sha256:123"
        assert manifest["config"] == {"sku": "Professional"}
        assert manifest["cache_hit"] is True
        assert manifest["artifact"]["filename"] == "a.wim"
        assert manifest["partial_failures"] == [
            {"stage": "build_volume", "item": "KB1", "error": "failed"}
        ]
        assert "metadata" not in manifest

    def test_write_manifest(self, tmp_path):
        """Written manifests should be valid, sorted JSON."""
        path = write_manifest({"b": 1, "a": 2}, tmp_path / "out" / MANIFEST_NAME)

        assert json.loads(path.read_text()) == {"a": 2, "b": 1}
        assert path.read_text().index('"a"') < path.read_text().index('"b"')
