"""Tests for resource handles and the session marker."""

import json
import os
from pathlib import Path

import pytest

from imageforge.ledger.handles import (
    NAMING_SCHEME,
    RegistryHiveHandle,
    VirtualMachineHandle,
    WorkPathHandle,
    handle_from_payload,
    hive_mount_key,
    is_session_hive_key,
    is_session_resource_name,
    resource_name,
)
from imageforge.ledger.marker import SessionActiveError, SessionMarker, StaleSessionError
from imageforge.types import ResourceKind

SESSION_ID = "1a2b3c4d5e6f40718293a4b5c6d7e8f9"


class TestNaming:
    """Tests for the session resource naming convention."""

    def test_resource_name_format(self):
        """Names should carry the scheme, session prefix and purpose."""
        name = resource_name(SESSION_ID, "VM")
        assert name == f"{NAMING_SCHEME}-1a2b3c4d-vm"
        assert is_session_resource_name(name)

    def test_foreign_names_do_not_match(self):
        """Only names created by the convention should be recognized."""
        assert not is_session_resource_name("build-server")
        assert not is_session_resource_name("imgforge-v0-1a2b3c4d-vm")
        assert not is_session_resource_name(f"{NAMING_SCHEME}-XYZ-vm")

    def test_invalid_purpose(self):
        """Purposes must be plain lowercase tokens."""
        with pytest.raises(ValueError):
            resource_name(SESSION_ID, "my share")

    def test_hive_keys(self):
        """Hive mount keys should round-trip through the matcher."""
        key = hive_mount_key(SESSION_ID, "SOFTWARE")
        assert key.startswith("HKLM\\")
        assert is_session_hive_key(key)
        assert not is_session_hive_key("HKLM\\SOFTWARE")


class TestHandles:
    """Tests for handle serialization."""

    def test_payload_round_trip(self, tmp_path):
        """Handles should rebuild from their payload, paths included."""
        handle = VirtualMachineHandle(
            machine_id="vm-1",
            name=resource_name(SESSION_ID, "vm"),
            disk_path=tmp_path / "volume.vhdx",
            credential_path=tmp_path / "vm-1.vmgs",
        )
        payload = json.loads(json.dumps(handle.to_payload()))

        rebuilt = handle_from_payload(ResourceKind.VIRTUAL_MACHINE, payload)

        assert rebuilt == handle
        assert isinstance(rebuilt.credential_path, Path)

    def test_keys_and_descriptions(self, tmp_path):
        """Keys identify the resource within its kind."""
        hive = RegistryHiveHandle(mount_key="HKLM\\x", hive_file=tmp_path / "SOFTWARE")
        work = WorkPathHandle(path=tmp_path)
        assert hive.key == "HKLM\\x"
        assert work.description == f"work_path:{tmp_path}"

    def test_unknown_kind(self):
        """Unknown kinds should be rejected."""
        with pytest.raises(ValueError):
            handle_from_payload("printer", {})


class TestSessionMarker:
    """Tests for SessionMarker."""

    def test_acquire_and_release(self, tmp_path):
        """Acquire should write the marker; release should remove it."""
        marker = SessionMarker(tmp_path / "marker")
        marker.acquire(SESSION_ID, "sha256:abc")

        info = marker.read()
        assert marker.held
        assert info is not None
        assert info.session_id == SESSION_ID
        assert info.pid == os.getpid()
        assert info.fingerprint == "sha256:abc"

        marker.release()
        assert not marker.exists()
        assert not marker.held
        marker.release()

    def test_second_session_refused_while_locked(self, tmp_path):
        """A live session's marker should block another one."""
        path = tmp_path / "marker"
        owner = SessionMarker(path)
        owner.acquire(SESSION_ID, "fp")
        try:
            other = SessionMarker(path)
            assert other.is_locked_elsewhere()
            with pytest.raises(SessionActiveError):
                other.acquire("ffff" * 8, "fp")
            with pytest.raises(SessionActiveError):
                other.clear_stale()
        finally:
            owner.release()

    def test_stale_marker_requires_recovery(self, tmp_path):
        """An unlocked leftover marker should raise StaleSessionError."""
        path = tmp_path / "marker"
        crashed = SessionMarker(path)
        crashed.acquire(SESSION_ID, "fp")
        crashed.abandon()
        assert path.exists()

        marker = SessionMarker(path)
        assert not marker.is_locked_elsewhere()
        with pytest.raises(StaleSessionError) as exc_info:
            marker.acquire("ffff" * 8, "fp")
        assert exc_info.value.info is not None
        assert exc_info.value.info.session_id == SESSION_ID

        marker.clear_stale()
        assert not path.exists()
        marker.acquire("ffff" * 8, "fp")
        marker.release()

    def test_release_never_touches_foreign_marker(self, tmp_path):
        """Release without holding the lock should leave the file alone."""
        path = tmp_path / "marker"
        path.write_text("{}")
        SessionMarker(path).release()
        assert path.exists()

    def test_unreadable_marker(self, tmp_path):
        """Corrupt content should read as None rather than fail."""
        path = tmp_path / "marker"
        path.write_text("not json")
        assert SessionMarker(path).read() is None
        assert SessionMarker(tmp_path / "absent").read() is None
