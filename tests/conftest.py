"""Shared fixtures: settings rooted in tmp_path and in-memory fake providers.

The fakes keep just enough host state (machines, mounts, attached disks,
shares, accounts, hives) for ``list_*`` queries to reflect what was created,
and append every mutating call to a shared ``calls`` list so tests can check
ordering.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any

import pytest

from imageforge.builds.schema import BuildConfig
from imageforge.config import Settings
from imageforge.db import create_all_tables, get_engine, get_session_factory
from imageforge.errors import FatalEnvironmentError, ProviderError
from imageforge.providers import (
    ImageInfo,
    MediaSelector,
    MediaSource,
    MountInfo,
    PartitionInfo,
    ProviderSet,
)
from imageforge.types import FirmwareType, PartitionRole, PowerState
from imageforge.volume.plan import GPT_OVERHEAD

GIB = 1024 * 1024 * 1024

DEFAULT_IMAGES = [
    ImageInfo(1, "Windows 11 Home", "Windows 11 Home edition"),
    ImageInfo(2, "Windows 11 Pro", "Windows 11 Pro edition"),
    ImageInfo(3, "Windows 11 Pro N", "Windows 11 Pro N edition"),
    ImageInfo(4, "Windows 11 Education", "Windows 11 Education edition"),
]


class FakeMedia:
    def __init__(self, calls: list[tuple[Any, ...]], media_path: Path) -> None:
        self.calls = calls
        self.media_path = media_path
        self.url: str | None = None

    def locate(self, selector: MediaSelector) -> MediaSource:
        self.calls.append(("locate", selector.release, selector.version))
        if self.url is not None:
            return MediaSource(filename=self.media_path.name, url=self.url)
        return MediaSource(filename=self.media_path.name, path=self.media_path)


class FakeImaging:
    def __init__(self, calls: list[tuple[Any, ...]]) -> None:
        self.calls = calls
        self.images = list(DEFAULT_IMAGES)
        self.mounts: dict[Path, Path] = {}
        self.recovery_image_size: int | None = 4096
        self.failing_packages: set[str] = set()
        self.failing_drivers: set[str] = set()
        self.available = True
        self.capture_error: Exception | None = None

    def check_available(self) -> None:
        if not self.available:
            raise FatalEnvironmentError("imaging tool not installed", code="tool_missing")

    def list_images(self, image_path: Path) -> list[ImageInfo]:
        return list(self.images)

    def apply_image(self, source_path: Path, index: int, target_path: Path, compact: bool) -> None:
        self.calls.append(("apply_image", index, compact))
        config_dir = target_path / "Windows/System32/config"
        config_dir.mkdir(parents=True, exist_ok=True)
        (config_dir / "SOFTWARE").write_bytes(b"hive")
        if self.recovery_image_size is not None:
            recovery = target_path / "Windows/System32/Recovery/Winre.wim"
            recovery.parent.mkdir(parents=True, exist_ok=True)
            recovery.write_bytes(b"r" * self.recovery_image_size)

    def mount_image(self, image_path: Path, index: int | None, mount_path: Path) -> Path:
        self.calls.append(("mount_image", str(mount_path), index))
        mount_path.mkdir(parents=True, exist_ok=True)
        if image_path.suffix.lower() == ".iso":
            (mount_path / "sources" / "sxs").mkdir(parents=True, exist_ok=True)
            (mount_path / "sources" / "install.wim").write_bytes(b"wim")
        self.mounts[mount_path] = image_path
        return mount_path

    def dismount_image(self, mount_path: Path, commit: bool) -> None:
        self.calls.append(("dismount_image", str(mount_path), commit))
        self.mounts.pop(mount_path, None)

    def list_mounts(self) -> list[MountInfo]:
        return [MountInfo(mount_path=m, source_path=s) for m, s in self.mounts.items()]

    def add_package(self, target_path: Path, package_path: Path) -> None:
        if package_path.name in self.failing_packages:
            raise ProviderError(f"package {package_path.name} failed: 0x800f081f")
        self.calls.append(("add_package", package_path.name))

    def inject_driver(self, mount_path: Path, driver_path: Path) -> None:
        if driver_path.name in self.failing_drivers:
            raise ProviderError(f"driver {driver_path.name} failed")
        self.calls.append(("inject_driver", driver_path.name))

    def enable_feature(self, target_path: Path, feature: str, source_path: Path | None) -> None:
        self.calls.append(("enable_feature", feature))

    def capture_volume(self, device_path: str, output_path: Path, label: str) -> Path:
        self.calls.append(("capture_volume", device_path, label))
        if self.capture_error is not None:
            raise self.capture_error
        output_path.write_bytes(b"captured:" + label.encode())
        return output_path

    def optimize_artifact(self, artifact_path: Path) -> None:
        self.calls.append(("optimize_artifact", artifact_path.name))


class FakeVirtualization:
    def __init__(self, calls: list[tuple[Any, ...]], root: Path) -> None:
        self.calls = calls
        self.root = root
        self.machines: dict[str, str] = {}
        self.states: dict[str, PowerState] = {}
        self.polls: dict[str, int] = {}
        # Polls after which a running guest shuts itself down (None = never)
        self.power_off_after: int | None = 2
        self.on_poll: Any = None
        self.with_credentials = True
        self.failing_removes: set[str] = set()
        self._counter = 0

    def check_available(self) -> None:
        pass

    def create_machine(self, name: str, disk_path: Path, memory_mb: int, cpu_count: int) -> str:
        self._counter += 1
        machine_id = f"vm-{self._counter}"
        self.machines[machine_id] = name
        self.states[machine_id] = PowerState.OFF
        self.calls.append(("create_machine", name))
        return machine_id

    def attach_media(self, machine_id: str, iso_path: Path) -> None:
        self.calls.append(("attach_media", machine_id))

    def set_boot_order(self, machine_id: str, devices: list[str]) -> None:
        self.calls.append(("set_boot_order", machine_id, tuple(devices)))

    def configure_secure_boot_and_tpm(self, machine_id: str) -> Path | None:
        self.calls.append(("configure_secure_boot_and_tpm", machine_id))
        if not self.with_credentials:
            return None
        self.root.mkdir(parents=True, exist_ok=True)
        credential = self.root / f"{machine_id}.vmgs"
        credential.write_bytes(b"key")
        return credential

    def start(self, machine_id: str) -> None:
        self.calls.append(("start", machine_id))
        self.states[machine_id] = PowerState.RUNNING
        self.polls[machine_id] = 0

    def stop(self, machine_id: str, force: bool) -> None:
        self.calls.append(("stop", machine_id, force))
        self.states[machine_id] = PowerState.OFF

    def power_state(self, machine_id: str) -> PowerState:
        if self.on_poll is not None:
            self.on_poll(machine_id)
        state = self.states.get(machine_id, PowerState.UNKNOWN)
        if state == PowerState.RUNNING and self.power_off_after is not None:
            self.polls[machine_id] += 1
            if self.polls[machine_id] > self.power_off_after:
                self.states[machine_id] = PowerState.OFF
                return PowerState.OFF
        return state

    def remove(self, machine_id: str) -> None:
        if machine_id in self.failing_removes:
            raise ProviderError(f"machine {machine_id} is busy", resource=machine_id)
        self.calls.append(("remove_machine", machine_id))
        self.machines.pop(machine_id, None)
        self.states.pop(machine_id, None)

    def list_machines(self) -> dict[str, str]:
        return dict(self.machines)


class FakePartitioning:
    def __init__(self, calls: list[tuple[Any, ...]], root: Path) -> None:
        self.calls = calls
        self.root = root
        self.devices: dict[Path, str] = {}
        self.attached: set[Path] = set()
        self.layouts: dict[Path, dict[int, PartitionInfo]] = {}
        self.capacities: dict[Path, int] = {}
        self.available = True

    def check_available(self) -> None:
        if not self.available:
            raise RuntimeError("storage service not running")

    def create_disk(self, path: Path, size_bytes: int, sector_size: int) -> None:
        self.calls.append(("create_disk", path.name, size_bytes))
        self.capacities[path] = size_bytes
        path.write_bytes(b"vhdx")

    def _free(self, disk: Path, excluding: int | None = None) -> int | None:
        if disk not in self.capacities:
            return None
        used = sum(
            p.size_bytes for n, p in self.layouts.get(disk, {}).items() if n != excluding
        )
        return self.capacities[disk] - GPT_OVERHEAD - used

    def _device(self, path: Path) -> str:
        if path not in self.devices:
            self.devices[path] = f"/dev/vd{len(self.devices)}"
        return self.devices[path]

    def _disk_for(self, device_path: str) -> Path:
        for path, device in self.devices.items():
            if device == device_path:
                return path
        raise ProviderError(f"unknown device {device_path}")

    def attach_disk(self, path: Path) -> str:
        self.calls.append(("attach_disk", path.name))
        self.attached.add(path)
        return self._device(path)

    def detach_disk(self, path: Path) -> None:
        self.calls.append(("detach_disk", path.name))
        self.attached.discard(path)

    def list_attached_disks(self) -> list[Path]:
        return sorted(self.attached)

    def list_partitions(self, device_path: str) -> list[PartitionInfo]:
        disk = self._disk_for(device_path)
        if disk not in self.layouts:
            # Disk created elsewhere (e.g. copied from the cache)
            for number, role in enumerate(
                (PartitionRole.SYSTEM, PartitionRole.RESERVED, PartitionRole.OS), start=1
            ):
                info = PartitionInfo(number, role, GIB, f"{device_path}p{number}")
                if role != PartitionRole.RESERVED:
                    info = self._mount(info)
                self.layouts.setdefault(disk, {})[number] = info
        return list(self.layouts[disk].values())

    def _mount(self, info: PartitionInfo) -> PartitionInfo:
        mount = self.root / info.device_path.strip("/").replace("/", "-")
        mount.mkdir(parents=True, exist_ok=True)
        return dataclasses.replace(info, mount_path=mount)

    def _store(self, info: PartitionInfo) -> PartitionInfo:
        disk = self._disk_for(info.device_path.rsplit("p", 1)[0])
        self.layouts.setdefault(disk, {})[info.number] = info
        return info

    def create_partition(
        self, device_path: str, role: PartitionRole, size_bytes: int | None, gpt_type: str
    ) -> PartitionInfo:
        disk = self._disk_for(device_path)
        number = len(self.layouts.get(disk, {})) + 1
        self.calls.append(("create_partition", role.value, size_bytes))
        free = self._free(disk)
        if size_bytes is None:
            size_bytes = 40 * GIB if free is None else free
        if free is not None and size_bytes > free:
            raise ProviderError(f"no room for {role.value} partition: {free} bytes free")
        info = PartitionInfo(number, role, size_bytes, f"{device_path}p{number}")
        return self._store(info)

    def resize_partition(self, partition: PartitionInfo, size_bytes: int) -> PartitionInfo:
        self.calls.append(("resize_partition", partition.role.value, size_bytes))
        disk = self._disk_for(partition.device_path.rsplit("p", 1)[0])
        free = self._free(disk, excluding=partition.number)
        if free is not None and size_bytes > free:
            raise ProviderError(f"cannot grow {partition.role.value} partition: {free} bytes free")
        return self._store(dataclasses.replace(partition, size_bytes=size_bytes))

    def format_volume(self, partition: PartitionInfo, filesystem: str, label: str) -> PartitionInfo:
        self.calls.append(("format_volume", partition.role.value, filesystem))
        return self._store(self._mount(partition))

    def write_boot_files(self, os_path: Path, system_path: Path, firmware: FirmwareType) -> None:
        self.calls.append(("write_boot_files", firmware.value))
        (system_path / "EFI").mkdir(parents=True, exist_ok=True)


class FakeHost:
    def __init__(self, calls: list[tuple[Any, ...]]) -> None:
        self.calls = calls
        self.shares: dict[str, Path] = {}
        self.accounts: list[str] = []
        self.hives: dict[str, Path] = {}
        self.registry: dict[tuple[str, str, str], str] = {}

    def create_share(self, name: str, path: Path, account: str) -> None:
        self.calls.append(("create_share", name))
        self.shares[name] = path

    def remove_share(self, name: str) -> None:
        self.calls.append(("remove_share", name))
        self.shares.pop(name, None)

    def list_shares(self) -> dict[str, Path]:
        return dict(self.shares)

    def create_account(self, name: str) -> str:
        self.calls.append(("create_account", name))
        self.accounts.append(name)
        return f"secret-{name}"

    def remove_account(self, name: str) -> None:
        self.calls.append(("remove_account", name))
        self.accounts.remove(name)

    def list_accounts(self) -> list[str]:
        return list(self.accounts)

    def load_hive(self, mount_key: str, hive_file: Path) -> None:
        self.calls.append(("load_hive", mount_key))
        self.hives[mount_key] = hive_file

    def unload_hive(self, mount_key: str) -> None:
        self.calls.append(("unload_hive", mount_key))
        self.hives.pop(mount_key, None)

    def list_hives(self) -> dict[str, Path]:
        return dict(self.hives)

    def set_registry_value(self, mount_key: str, key: str, name: str, value: str) -> None:
        if mount_key not in self.hives:
            raise ProviderError(f"hive {mount_key} is not loaded")
        self.registry[(mount_key, key, name)] = value


class FakeEnvironment:
    """All fake providers sharing one call log."""

    def __init__(self, root: Path) -> None:
        self.calls: list[tuple[Any, ...]] = []
        media_path = root / "media" / "install.iso"
        media_path.parent.mkdir(parents=True, exist_ok=True)
        media_path.write_bytes(b"iso")
        self.media = FakeMedia(self.calls, media_path)
        self.imaging = FakeImaging(self.calls)
        self.virtualization = FakeVirtualization(self.calls, root / "vm-state")
        self.partitioning = FakePartitioning(self.calls, root / "volumes")
        self.host = FakeHost(self.calls)

    @property
    def providers(self) -> ProviderSet:
        return ProviderSet(
            media=self.media,
            imaging=self.imaging,
            virtualization=self.virtualization,
            partitioning=self.partitioning,
            host=self.host,
        )

    def names(self) -> list[str]:
        """Names of recorded calls, in order."""
        return [call[0] for call in self.calls]

    def count(self, name: str) -> int:
        return self.names().count(name)

    def is_clean(self) -> bool:
        """Whether no host resources are left behind."""
        return not (
            self.virtualization.machines
            or self.imaging.mounts
            or self.partitioning.attached
            or self.host.shares
            or self.host.accounts
            or self.host.hives
        )


@pytest.fixture
def env(tmp_path: Path) -> FakeEnvironment:
    """Fake providers rooted in a temporary host directory."""
    return FakeEnvironment(tmp_path / "host")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every directory under tmp_path and no waiting."""
    return Settings(
        work_dir=tmp_path / "work",
        cache_dir=tmp_path / "cache",
        output_dir=tmp_path / "output",
        download_dir=tmp_path / "downloads",
        db_url=f"sqlite:///{tmp_path}/imageforge.db",
        download_backoff=0,
        release_retry_delay=0,
        vm_poll_interval=0.01,
    )


@pytest.fixture
def session_factory(settings: Settings):
    """Session factory bound to a fresh SQLite database."""
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def build_config() -> BuildConfig:
    """Minimal build configuration without customization."""
    return BuildConfig(
        sku="Professional",
        release="11",
        version="23H2",
        edition="Windows 11 Pro",
        disk_size_gb=64,
    )
