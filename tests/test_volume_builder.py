"""Tests for volume materialization against the fake providers."""

from pathlib import Path

import pytest

from imageforge.errors import ProviderError
from imageforge.ledger.ledger import ResourceLedger
from imageforge.types import PartitionRole, ResourceKind, UpdateKind
from imageforge.volume.builder import (
    RECOVERY_IMAGE_PATH,
    MissingRecoveryImageError,
    VolumeBuilder,
    VolumeIncompleteError,
)
from imageforge.volume.editions import AmbiguousEditionError, NoMatchingImageError
from imageforge.volume.plan import GIB, MIB
from imageforge.volume.updates import UpdatePackage

RECOVERY_PARTITION = 283 * MIB


@pytest.fixture
def ledger(env, settings):
    return ResourceLedger(env.providers, settings)


@pytest.fixture
def builder(env, settings, ledger, tmp_path):
    return VolumeBuilder(env.providers, ledger, settings, tmp_path / "session")


def _package(identifier: str, kind: UpdateKind, tmp_path: Path) -> UpdatePackage:
    path = tmp_path / f"{identifier.lower()}.msu"
    return UpdatePackage(identifier, path, kind)


class TestResolveIndex:
    """Tests for VolumeBuilder.resolve_index."""

    def test_edition(self, builder, build_config, tmp_path):
        """Editions should resolve through the payload's image list."""
        assert builder.resolve_index(build_config, tmp_path / "install.wim") == 2

    def test_explicit_index(self, builder, build_config, tmp_path):
        """An explicit index must exist in the payload."""
        config = build_config.model_copy(update={"edition": None, "image_index": 4})
        assert builder.resolve_index(config, tmp_path / "install.wim") == 4

        missing = build_config.model_copy(update={"edition": None, "image_index": 9})
        with pytest.raises(NoMatchingImageError):
            builder.resolve_index(missing, tmp_path / "install.wim")

    def test_ambiguous(self, builder, build_config, tmp_path):
        """Ambiguous editions should surface the candidates."""
        config = build_config.model_copy(update={"edition": "Pro"})
        with pytest.raises(AmbiguousEditionError):
            builder.resolve_index(config, tmp_path / "install.wim")


class TestBuild:
    """Tests for VolumeBuilder.build."""

    def test_full_build(self, env, builder, ledger, build_config, tmp_path):
        """A build should lay out partitions, apply, carve recovery and verify."""
        volume = builder.build(build_config, tmp_path / "install.wim", packages=[])

        assert env.names() == [
            "create_disk",
            "attach_disk",
            "create_partition",
            "format_volume",
            "create_partition",
            "create_partition",
            "format_volume",
            "apply_image",
            "resize_partition",
            "create_partition",
            "format_volume",
            "write_boot_files",
        ]
        assert set(volume.partitions) == {
            PartitionRole.SYSTEM,
            PartitionRole.RESERVED,
            PartitionRole.OS,
            PartitionRole.RECOVERY,
        }
        assert ("create_partition", "recovery", RECOVERY_PARTITION) in env.calls
        assert volume.recovery_image_size == 4096
        assert volume.boot_files_written
        assert volume.plan is not None and volume.plan.has_recovery
        assert not (volume.mount_path(PartitionRole.OS) / RECOVERY_IMAGE_PATH).exists()
        assert any(volume.mount_path(PartitionRole.RECOVERY).rglob("Winre.wim"))

        disks = ledger.handles(ResourceKind.VIRTUAL_DISK)
        assert len(disks) == 1
        assert disks[0].attached
        assert disks[0].device_path == "/dev/vd0"

    def test_missing_recovery_image_tolerated(self, env, builder, build_config, tmp_path):
        """Without a recovery image, no Recovery partition is carved."""
        env.imaging.recovery_image_size = None

        volume = builder.build(build_config, tmp_path / "install.wim", packages=[])

        assert PartitionRole.RECOVERY not in volume.partitions
        assert "resize_partition" not in env.names()

    def test_missing_recovery_image_required(self, env, builder, build_config, tmp_path):
        """require_recovery turns a missing image into a structural error."""
        env.imaging.recovery_image_size = None
        config = build_config.model_copy(update={"require_recovery": True})

        with pytest.raises(MissingRecoveryImageError) as exc_info:
            builder.build(config, tmp_path / "install.wim", packages=[])
        assert exc_info.value.code == "missing_recovery_image"

    def test_upfront_reservation(self, env, settings, ledger, build_config, tmp_path):
        """A large enough upfront reservation is used without resizing."""
        upfront = settings.model_copy(update={"reserve_recovery_upfront": True})
        builder = VolumeBuilder(env.providers, ledger, upfront, tmp_path / "session")

        volume = builder.build(build_config, tmp_path / "install.wim", packages=[])

        assert PartitionRole.RECOVERY in volume.partitions
        assert "resize_partition" not in env.names()
        assert env.count("create_partition") == 4
        # OS sits before the reservation, so it is created with a fixed size
        created = {c[1]: c[2] for c in env.calls if c[0] == "create_partition"}
        assert created["os"] == volume.plan.resolved_size(PartitionRole.OS)
        assert created["recovery"] == GIB
        assert volume.partitions[PartitionRole.RECOVERY].size_bytes == GIB

    def test_fixed_os_size_adds_data_partition(self, env, builder, build_config, tmp_path):
        """A fixed OS size leaves the rest to Data, which donates the Recovery space."""
        config = build_config.model_copy(update={"os_size_gb": 40})

        volume = builder.build(config, tmp_path / "install.wim", packages=[])

        assert [spec.role for spec in volume.plan.partitions] == [
            PartitionRole.SYSTEM,
            PartitionRole.RESERVED,
            PartitionRole.OS,
            PartitionRole.DATA,
            PartitionRole.RECOVERY,
        ]
        assert ("create_partition", "os", 40 * GIB) in env.calls
        assert ("create_partition", "data", None) in env.calls
        assert ("create_partition", "recovery", RECOVERY_PARTITION) in env.calls
        resized = [c[1] for c in env.calls if c[0] == "resize_partition"]
        assert resized == ["data"]
        assert volume.partitions[PartitionRole.OS].size_bytes == 40 * GIB
        assert volume.partitions[PartitionRole.DATA].size_bytes == volume.plan.resolved_size(
            PartitionRole.DATA
        )

    def test_partitions_beyond_capacity_rejected(self, env, builder, build_config, tmp_path):
        """The partitioning service refuses layouts that overrun the disk."""
        config = build_config.model_copy(update={"os_size_gb": 40})
        volume = builder.build(config, tmp_path / "install.wim", packages=[])

        with pytest.raises(ProviderError):
            env.partitioning.resize_partition(
                volume.partition(PartitionRole.RECOVERY), config.disk_size_bytes
            )

    def test_features_and_updates(self, env, builder, build_config, tmp_path):
        """Features are enabled and packages applied before finalizing."""
        config = build_config.model_copy(update={"features": frozenset({"NetFx3"})})
        packages = [
            _package("KB2", UpdateKind.CUMULATIVE, tmp_path),
            _package("KB1", UpdateKind.SERVICING_STACK, tmp_path),
        ]

        volume = builder.build(config, tmp_path / "install.wim", packages, tmp_path / "sxs")

        assert volume.enabled_features == ["NetFx3"]
        assert volume.update_report.applied == ["KB1", "KB2"]
        names = env.names()
        assert names.index("enable_feature") < names.index("add_package")
        assert names.index("add_package") < names.index("write_boot_files")

    def test_checkpoint_stops_build(self, env, builder, ledger, build_config, tmp_path):
        """A raising checkpoint stops the build; the disk stays in the ledger."""

        def checkpoint():
            raise RuntimeError("cancelled")

        with pytest.raises(RuntimeError):
            builder.build(build_config, tmp_path / "install.wim", [], checkpoint=checkpoint)

        assert "write_boot_files" not in env.names()
        assert ledger.handles(ResourceKind.VIRTUAL_DISK)
        ledger.release_all()
        assert env.is_clean()


class TestApplyUpdates:
    """Tests for VolumeBuilder.apply_updates."""

    def test_partial_failure_continues(self, env, builder, build_config, tmp_path):
        """A failing package is recorded and the rest still apply."""
        volume = builder.build(build_config, tmp_path / "install.wim", packages=[])
        env.imaging.failing_packages.add("kb2.msu")
        packages = [
            _package("KB1", UpdateKind.OTHER, tmp_path),
            _package("KB2", UpdateKind.OTHER, tmp_path),
            _package("KB3", UpdateKind.OTHER, tmp_path),
        ]

        report = builder.apply_updates(volume, packages)

        assert report.applied == ["KB1", "KB3"]
        assert [f.item for f in report.failures] == ["KB2"]
        assert "0x800f081f" in report.failures[0].error
        assert volume.partial_failures == report.failures

    def test_driver_packages_injected(self, env, builder, build_config, tmp_path):
        """Driver packages go through driver injection, after everything else."""
        volume = builder.build(build_config, tmp_path / "install.wim", packages=[])
        env.calls.clear()
        packages = [
            _package("NIC", UpdateKind.DRIVER, tmp_path),
            _package("KB1", UpdateKind.CUMULATIVE, tmp_path),
        ]

        builder.apply_updates(volume, packages)

        assert env.calls == [("add_package", "kb1.msu"), ("inject_driver", "nic.msu")]


class TestEnableFeatures:
    """Tests for VolumeBuilder.enable_features."""

    def test_failure_is_partial(self, env, builder, build_config, tmp_path):
        """A feature that fails is recorded without stopping the others."""
        volume = builder.build(build_config, tmp_path / "install.wim", packages=[])

        def enable(target, feature, source):
            if feature == "Broken":
                raise ProviderError("feature not found")

        env.imaging.enable_feature = enable

        failures = builder.enable_features(volume, ["Broken", "NetFx3"])

        assert [f.item for f in failures] == ["Broken"]
        assert volume.enabled_features == ["NetFx3"]


class TestAttachment:
    """Tests for attaching, detaching and verifying volumes."""

    def test_detach_and_reattach(self, env, builder, ledger, build_config, tmp_path):
        """Detaching goes through the ledger; reattaching rediscovers partitions."""
        volume = builder.build(build_config, tmp_path / "install.wim", packages=[])

        builder.detach_volume(volume)
        assert not env.partitioning.attached
        assert not ledger.handles(ResourceKind.VIRTUAL_DISK)

        builder.reattach(volume)
        assert volume.disk.attached
        assert PartitionRole.RECOVERY in volume.partitions
        assert volume.image_index == 2

    def test_attach_existing_disk(self, env, builder, tmp_path):
        """An existing disk, e.g. from the cache, can be opened."""
        disk = tmp_path / "cached.vhdx"
        disk.write_bytes(b"vhdx")

        volume = builder.attach_volume(disk)

        assert set(volume.partitions) == {
            PartitionRole.SYSTEM,
            PartitionRole.RESERVED,
            PartitionRole.OS,
        }
        assert volume.mount_path(PartitionRole.OS).is_dir()

    def test_verify_reports_every_problem(self, builder, tmp_path):
        """Verification lists all problems at once."""
        disk = tmp_path / "cached.vhdx"
        disk.write_bytes(b"vhdx")
        volume = builder.attach_volume(disk)
        disk.unlink()

        with pytest.raises(VolumeIncompleteError) as exc_info:
            builder.verify_volume(volume)

        assert exc_info.value.problems == [
            "boot files not written",
            f"disk file {disk} missing",
        ]
