"""Build pipeline state machine.

Stages, in order::

    START -> PREFLIGHT -> RECOVER -> ACQUIRE_MEDIA -> RESOLVE_VOLUME
      -> [BUILD_VOLUME on cache miss] -> [CUSTOMIZE] -> CAPTURE
      -> INJECT_DRIVERS -> OPTIMIZE -> FINALIZE -> RELEASE -> END

Every exit path, including failures and cancellation, goes through RELEASE,
which hands all registered resources back to the ledger for teardown.
Cancellation is checked before each stage and inside the VM poll loop;
CAPTURE is never interrupted once started.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
import shutil
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar
from urllib.parse import urlparse

from sqlalchemy.orm import Session, sessionmaker

from imageforge.acquisition.cache import ArtifactCache
from imageforge.acquisition.fetch import DownloadRequest, Fetcher
from imageforge.acquisition.fingerprint import BuildFingerprint
from imageforge.builds.schema import BuildConfig
from imageforge.config import Settings
from imageforge.errors import BuildCancelledError, StageError, StructuralError
from imageforge.ledger.handles import (
    EphemeralAccountHandle,
    MountedImageHandle,
    NetworkShareHandle,
    RegistryHiveHandle,
    VirtualMachineHandle,
    WorkPathHandle,
    hive_mount_key,
    resource_name,
)
from imageforge.ledger.ledger import ReleaseReport, ResourceLedger
from imageforge.ledger.marker import SessionActiveError, StaleSessionError
from imageforge.log import attach_file_log, detach_file_log
from imageforge.pipeline.cancel import CancellationToken
from imageforge.pipeline.finalize import (
    MANIFEST_NAME,
    generate_manifest,
    publish_artifact,
    write_manifest,
)
from imageforge.providers import MediaSelector, ProviderSet, run_preflight
from imageforge.types import (
    ArtifactInfo,
    PartialFailure,
    PartitionRole,
    PipelineStage,
    PowerState,
    SessionStatus,
)
from imageforge.volume.builder import VolumeBuilder, VolumeHandle
from imageforge.volume.updates import UpdatePackage, classify_update, is_preview

logger = logging.getLogger(__name__)

T = TypeVar("T")

BUILD_LOG_NAME = "build.log"

# Payload names looked up under the media's sources/ directory
INSTALL_IMAGE_NAMES = ("install.wim", "install.esd", "install.swm")

# Registry key (inside the offline SOFTWARE hive) read by the guest agent
GUEST_AGENT_KEY = "imageforge"

CUSTOMIZATION_FILE = "customization.json"


class MediaLayoutError(StructuralError):
    """Raised when installation media has no install payload."""

    def __init__(self, media_root: Path, code: str = "install_image_missing") -> None:
        super().__init__(
            f"No install image ({', '.join(INSTALL_IMAGE_NAMES)}) under {media_root / 'sources'}",
            code,
        )
        self.media_root = media_root


class VmTimeoutError(StructuralError):
    """Raised when the customization VM does not power off in time."""

    def __init__(self, machine: str, timeout: float, code: str = "vm_timeout") -> None:
        super().__init__(
            f"VM {machine} did not power off within {timeout:g}s", code
        )
        self.resource = machine


@dataclass
class PipelineResult:
    """Outcome of one pipeline run.

    Attributes:
        session_id: Session identifier.
        status: Terminal status.
        fingerprint: Configuration fingerprint key.
        stages: Stages entered, in order.
        cache_hit: Whether the base volume came from the cache.
        artifact: Published artifact, on success.
        manifest_path: Written manifest, on success.
        failed_stage: Stage that failed or was cancelled.
        error: Terminal error message.
        error_code: Terminal error code.
        partial_failures: Non-fatal item failures.
        recovery_report: Recovery sweep run before the build, if any.
        release_report: Final release sweep.
        log_path: Session build log.
    """

    session_id: str
    status: SessionStatus = SessionStatus.RUNNING
    fingerprint: str = ""
    stages: list[str] = field(default_factory=list)
    cache_hit: bool = False
    artifact: ArtifactInfo | None = None
    manifest_path: Path | None = None
    failed_stage: str | None = None
    error: str | None = None
    error_code: str | None = None
    partial_failures: list[PartialFailure] = field(default_factory=list)
    recovery_report: ReleaseReport | None = None
    release_report: ReleaseReport | None = None
    log_path: Path | None = None

    @property
    def succeeded(self) -> bool:
        """Whether the build produced an artifact."""
        return self.status == SessionStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dict."""
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "fingerprint": self.fingerprint,
            "stages": list(self.stages),
            "cache_hit": self.cache_hit,
            "artifact": dataclasses.asdict(self.artifact) if self.artifact else None,
            "manifest_path": str(self.manifest_path) if self.manifest_path else None,
            "failed_stage": self.failed_stage,
            "error": self.error,
            "error_code": self.error_code,
            "partial_failures": [dataclasses.asdict(f) for f in self.partial_failures],
            "recovery": self.recovery_report.to_dict() if self.recovery_report else None,
            "release": self.release_report.to_dict() if self.release_report else None,
            "log_path": str(self.log_path) if self.log_path else None,
        }


@dataclass
class _BuildContext:
    """Mutable per-run state passed between stages."""

    config: BuildConfig
    work_dir: Path
    media_path: Path | None = None
    driver_paths: list[tuple[str, Path]] = field(default_factory=list)
    volume: VolumeHandle | None = None
    artifact_path: Path | None = None


def find_install_image(media_root: Path) -> Path:
    """Locate the install payload on mounted media.

    Raises:
        MediaLayoutError: If no install payload is present.
    """
    for name in INSTALL_IMAGE_NAMES:
        candidate = media_root / "sources" / name
        if candidate.is_file():
            return candidate
    raise MediaLayoutError(media_root)


def _download_name(url: str, fallback: str) -> str:
    name = Path(urlparse(url).path).name
    return name or fallback


def _folder_name(label: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", label).strip(".-") or "item"


class Pipeline:
    """Runs builds end to end.

    Args:
        settings: Application settings.
        providers: External collaborators.
        session_factory: Database session factory (None = no history).
        cache: Artifact cache (defaults to ``settings.cache_dir``).
        fetcher: Download manager (created from settings if omitted).
        token: Cancellation token (created from ``settings.build_timeout``
            at the start of each run if omitted).
        use_cache: Look up the cache before building.
    """

    def __init__(
        self,
        settings: Settings,
        providers: ProviderSet,
        session_factory: sessionmaker[Session] | None = None,
        cache: ArtifactCache | None = None,
        fetcher: Fetcher | None = None,
        token: CancellationToken | None = None,
        use_cache: bool = True,
    ) -> None:
        self.settings = settings
        self.providers = providers
        self._session_factory = session_factory
        self.cache = cache or ArtifactCache(settings.cache_dir)
        self._fetcher = fetcher
        self.token = token
        self.use_cache = use_cache

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, config: BuildConfig) -> PipelineResult:
        """Run a build.

        Never raises for build failures: the outcome, including the failed
        stage and error, is reported in the returned result.

        Args:
            config: Build configuration.

        Returns:
            PipelineResult.
        """
        session_id = uuid.uuid4().hex
        token = self.token or CancellationToken(self.settings.build_timeout)
        fingerprint = BuildFingerprint.from_config(config)
        work_dir = self.settings.sessions_dir / session_id

        result = PipelineResult(session_id=session_id, fingerprint=fingerprint.key)
        ledger = ResourceLedger(self.providers, self.settings, self._session_factory)
        builder = VolumeBuilder(self.providers, ledger, self.settings, work_dir)
        ctx = _BuildContext(config=config, work_dir=work_dir)

        owns_fetcher = self._fetcher is None
        fetcher = self._fetcher or Fetcher(self.settings)

        log_path = self.settings.output_dir / session_id / BUILD_LOG_NAME
        started_at = datetime.now(timezone.utc)
        self._write_log_header(log_path, session_id, fingerprint, started_at)
        result.log_path = log_path
        package_logger = logging.getLogger("imageforge")
        file_handler = attach_file_log(log_path, logger=package_logger)
        # The session log records everything; console handlers keep their own level
        previous_level = package_logger.level
        package_logger.setLevel(logging.DEBUG)

        current = PipelineStage.START

        def stage(name: PipelineStage, func: Callable[[], T]) -> T:
            nonlocal current
            # Cancellation here is charged to the stage that did not start
            current = name
            token.raise_if_cancelled()
            result.stages.append(name.value)
            logger.info("Stage %s", name.value)
            try:
                return func()
            except (BuildCancelledError, StageError):
                raise
            except Exception as e:
                raise StageError(name.value, e) from e

        try:
            stage(PipelineStage.START, lambda: self._start(ledger))
            stage(PipelineStage.PREFLIGHT, lambda: run_preflight(self.providers, config))
            result.recovery_report = stage(
                PipelineStage.RECOVER,
                lambda: self._recover_and_open(ledger, session_id, fingerprint, work_dir),
            )
            stage(PipelineStage.ACQUIRE_MEDIA, lambda: self._acquire_media(ctx, fetcher, result))

            ctx.volume = stage(
                PipelineStage.RESOLVE_VOLUME,
                lambda: self._resolve_volume(fingerprint, builder, result),
            )
            if ctx.volume is None:
                ctx.volume = stage(
                    PipelineStage.BUILD_VOLUME,
                    lambda: self._build_volume(ctx, builder, ledger, fetcher, result, token),
                )

            if config.requires_customization:
                stage(
                    PipelineStage.CUSTOMIZE,
                    lambda: self._customize(ctx, builder, ledger, session_id, token),
                )

            stage(PipelineStage.CAPTURE, lambda: self._capture(ctx, builder))
            if ctx.driver_paths:
                stage(
                    PipelineStage.INJECT_DRIVERS,
                    lambda: self._inject_drivers(ctx, ledger, result),
                )
            stage(PipelineStage.OPTIMIZE, lambda: self._optimize(ctx))
            stage(
                PipelineStage.FINALIZE,
                lambda: self._finalize(ctx, session_id, fingerprint, result),
            )
            result.status = SessionStatus.SUCCEEDED

        except BuildCancelledError as e:
            self._record_failure(result, SessionStatus.ABORTED, current.value, e)
        except StageError as e:
            status = (
                SessionStatus.ABORTED
                if isinstance(e.cause, BuildCancelledError)
                else SessionStatus.FAILED
            )
            self._record_failure(result, status, e.stage, e)
        except KeyboardInterrupt:
            self._record_failure(
                result,
                SessionStatus.ABORTED,
                current.value,
                BuildCancelledError("interrupted"),
            )
        finally:
            if result.status == SessionStatus.RUNNING:
                result.status = SessionStatus.FAILED
                result.failed_stage = current.value
            try:
                self._release(ledger, result)
            finally:
                package_logger.setLevel(previous_level)
                self._close_log(log_path, package_logger, file_handler, result, started_at)
                if owns_fetcher:
                    fetcher.close()

        return result

    def _release(self, ledger: ResourceLedger, result: PipelineResult) -> None:
        result.stages.append(PipelineStage.RELEASE.value)
        logger.info("Stage %s", PipelineStage.RELEASE.value)
        result.release_report = ledger.release_all()
        for failure in result.release_report.failures:
            logger.warning(
                "Release warning: %s %s: %s", failure.kind, failure.resource, failure.error
            )

        ledger.finish_session(
            result.status,
            failed_stage=result.failed_stage,
            error_code=result.error_code,
            message=result.error,
            cache_hit=result.cache_hit,
            artifact_path=Path(result.artifact.path) if result.artifact else None,
            summary={
                "partial_failures": [dataclasses.asdict(f) for f in result.partial_failures],
                "release": result.release_report.to_dict(),
            },
        )
        result.stages.append(PipelineStage.END.value)

    @staticmethod
    def _record_failure(
        result: PipelineResult,
        status: SessionStatus,
        stage: str,
        error: BaseException,
    ) -> None:
        result.status = status
        result.failed_stage = stage
        result.error = str(error)
        result.error_code = getattr(error, "code", None)
        if status == SessionStatus.ABORTED:
            logger.warning("Build aborted during %s: %s", stage, error)
        else:
            logger.error("Build failed: %s", error)

    # ------------------------------------------------------------------
    # Session log
    # ------------------------------------------------------------------

    @staticmethod
    def _write_log_header(
        log_path: Path,
        session_id: str,
        fingerprint: BuildFingerprint,
        started_at: datetime,
    ) -> None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as log_file:
            log_file.write(f"# Session: {session_id}\n")
            log_file.write(f"# Fingerprint: {fingerprint.key}\n")
            log_file.write(
                f"# Build: {fingerprint.release} {fingerprint.sku} {fingerprint.version}\n"
            )
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write("# " + "=" * 70 + "\n\n")

    @staticmethod
    def _close_log(
        log_path: Path,
        package_logger: logging.Logger,
        handler: logging.Handler,
        result: PipelineResult,
        started_at: datetime,
    ) -> None:
        detach_file_log(handler, package_logger)
        finished_at = datetime.now(timezone.utc)
        with log_path.open("a", encoding="utf-8") as log_file:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Status: {result.status.value}\n")
            if result.failed_stage:
                log_file.write(f"# Failed stage: {result.failed_stage}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _start(self, ledger: ResourceLedger) -> None:
        if ledger.marker.is_locked_elsewhere():
            raise SessionActiveError(ledger.marker.path)

    def _recover_and_open(
        self,
        ledger: ResourceLedger,
        session_id: str,
        fingerprint: BuildFingerprint,
        work_dir: Path,
    ) -> ReleaseReport | None:
        report: ReleaseReport | None = None
        if ledger.marker.exists():
            if not self.settings.auto_recover:
                raise StaleSessionError(ledger.marker.path, ledger.marker.read())
            report = ledger.recover_orphaned()
            if not report.ok:
                raise StructuralError(
                    f"Recovery left {len(report.failures)} resource(s) behind; "
                    "resolve them and run 'imageforge session recover'",
                    code="recovery_incomplete",
                )

        ledger.marker.acquire(session_id, fingerprint.key)
        ledger.open_session(session_id, fingerprint.key, work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        ledger.register(WorkPathHandle(path=work_dir))
        return report

    def _acquire_media(
        self,
        ctx: _BuildContext,
        fetcher: Fetcher,
        result: PipelineResult,
    ) -> None:
        config = ctx.config
        selector = MediaSelector(
            release=config.release,
            version=config.version,
            architecture=config.architecture,
            language=config.language,
        )
        source = self.providers.media.locate(selector)
        if source.url is not None:
            destination = self.settings.download_dir / source.filename
            fetcher.fetch(
                source.url,
                destination,
                expected_size=source.size_bytes,
                sha256=source.sha256,
            )
            ctx.media_path = destination
        else:
            ctx.media_path = source.path
        logger.info("Installation media: %s", ctx.media_path)

        requests: list[DownloadRequest] = []
        for index, driver in enumerate(config.drivers):
            if driver.path is not None:
                ctx.driver_paths.append((driver.name, driver.path))
                continue
            url = driver.url or ""
            # One folder per driver; URLs often share a file name
            folder = f"{index:02d}-{_folder_name(driver.name)}"
            destination = (
                self.settings.download_dir
                / "drivers"
                / folder
                / _download_name(url, f"{_folder_name(driver.name)}.cab")
            )
            requests.append(DownloadRequest(url, destination, sha256=driver.sha256))
            ctx.driver_paths.append((driver.name, destination))

        if requests:
            batch = fetcher.fetch_many(requests)
            failed = set(batch.failures)
            for name, path in list(ctx.driver_paths):
                if path in failed:
                    result.partial_failures.append(
                        PartialFailure(
                            PipelineStage.ACQUIRE_MEDIA.value, name, batch.failures[path]
                        )
                    )
                    ctx.driver_paths.remove((name, path))

    def _resolve_volume(
        self,
        fingerprint: BuildFingerprint,
        builder: VolumeBuilder,
        result: PipelineResult,
    ) -> VolumeHandle | None:
        if not (self.use_cache and self.settings.cache_enabled):
            logger.info("Cache lookup skipped")
            return None
        entry = self.cache.lookup(fingerprint)
        if entry is None:
            return None

        result.cache_hit = True
        # Work on a copy; cache entries are never modified
        shutil.copyfile(entry.image_path, builder.disk_path)
        return builder.attach_volume(builder.disk_path)

    def _acquire_updates(
        self,
        ctx: _BuildContext,
        fetcher: Fetcher,
        result: PipelineResult,
    ) -> list[UpdatePackage]:
        requests: list[DownloadRequest] = []
        locations: list[tuple[str, Path, str]] = []
        declared = {u.identifier: u.kind for u in ctx.config.updates}

        for update in ctx.config.updates:
            if update.path is not None:
                locations.append((update.identifier, update.path, update.path.name))
                continue
            url = update.url or ""
            filename = _download_name(url, f"{update.identifier}.msu")
            destination = self.settings.download_dir / "updates" / update.identifier / filename
            requests.append(
                DownloadRequest(url, destination, update.size_bytes, update.sha256)
            )
            locations.append((update.identifier, destination, filename))

        batch = fetcher.fetch_many(requests)
        packages: list[UpdatePackage] = []
        for identifier, path, filename in locations:
            if path in batch.failures:
                result.partial_failures.append(
                    PartialFailure(
                        PipelineStage.BUILD_VOLUME.value, identifier, batch.failures[path]
                    )
                )
                continue
            packages.append(
                UpdatePackage(
                    identifier=identifier,
                    path=path,
                    kind=classify_update(filename, declared.get(identifier)),
                    preview=is_preview(filename),
                )
            )
        return packages

    def _build_volume(
        self,
        ctx: _BuildContext,
        builder: VolumeBuilder,
        ledger: ResourceLedger,
        fetcher: Fetcher,
        result: PipelineResult,
        token: CancellationToken,
    ) -> VolumeHandle:
        config = ctx.config
        if ctx.media_path is None:
            raise StructuralError("No installation media acquired", code="media_missing")

        packages = self._acquire_updates(ctx, fetcher, result)
        token.raise_if_cancelled()

        media_mount: MountedImageHandle | None = None
        feature_source: Path | None = None
        if ctx.media_path.suffix.lower() == ".iso":
            mount_dir = ctx.work_dir / "mnt" / "media"
            mount_dir.mkdir(parents=True, exist_ok=True)
            mounted = self.providers.imaging.mount_image(ctx.media_path, None, mount_dir)
            media_mount = MountedImageHandle(mount_path=mount_dir, source_path=ctx.media_path)
            ledger.register(media_mount)
            source_image = find_install_image(mounted)
            sxs = mounted / "sources" / "sxs"
            feature_source = sxs if sxs.is_dir() else None
        else:
            source_image = ctx.media_path

        volume = builder.build(
            config,
            source_image,
            packages,
            feature_source=feature_source,
            checkpoint=token.raise_if_cancelled,
        )
        result.partial_failures.extend(volume.partial_failures)

        if media_mount is not None:
            ledger.release(media_mount)

        if self.settings.cache_enabled:
            # Store under what was actually applied, not what was requested
            applied = BuildFingerprint(
                sku=config.sku,
                release=config.release,
                version=config.version,
                features=tuple(volume.enabled_features),
                updates=tuple(volume.update_report.applied),
            )
            builder.detach_volume(volume)
            self.cache.store(applied, volume.path)
            builder.reattach(volume)

        return volume

    def _customize(
        self,
        ctx: _BuildContext,
        builder: VolumeBuilder,
        ledger: ResourceLedger,
        session_id: str,
        token: CancellationToken,
    ) -> None:
        config = ctx.config
        volume = ctx.volume
        if volume is None:
            raise StructuralError("No volume to customize", code="volume_missing")
        host = self.providers.host
        virt = self.providers.virtualization

        share_dir = ctx.work_dir / "share"
        share_dir.mkdir(parents=True, exist_ok=True)
        (share_dir / CUSTOMIZATION_FILE).write_text(
            json.dumps(
                {
                    "applications": list(config.applications),
                    "install_office": config.install_office,
                    "guest_updates": config.guest_updates,
                },
                indent=2,
            ),
            encoding="utf-8",
        )

        account_name = resource_name(session_id, "acct")
        credential = host.create_account(account_name)
        account = EphemeralAccountHandle(name=account_name, credential_ref=credential)
        ledger.register(account)

        share_name = resource_name(session_id, "share")
        host.create_share(share_name, share_dir, account_name)
        share = NetworkShareHandle(name=share_name, path=share_dir, account=account_name)
        ledger.register(share)

        # Point the guest agent at the share through the offline registry
        hive_file = volume.mount_path(PartitionRole.OS) / "Windows/System32/config/SOFTWARE"
        mount_key = hive_mount_key(session_id, "software")
        host.load_hive(mount_key, hive_file)
        hive = RegistryHiveHandle(mount_key=mount_key, hive_file=hive_file)
        ledger.register(hive)
        host.set_registry_value(mount_key, GUEST_AGENT_KEY, "Share", share_name)
        host.set_registry_value(mount_key, GUEST_AGENT_KEY, "Account", account_name)
        ledger.release(hive)

        builder.detach_volume(volume)

        vm_name = resource_name(session_id, "vm")
        machine_id = virt.create_machine(
            vm_name, volume.path, self.settings.vm_memory_mb, self.settings.vm_cpu_count
        )
        vm = VirtualMachineHandle(machine_id=machine_id, name=vm_name, disk_path=volume.path)
        ledger.register(vm)

        credential_path = virt.configure_secure_boot_and_tpm(machine_id)
        if credential_path is not None:
            vm = dataclasses.replace(vm, credential_path=credential_path)
            ledger.register(vm)

        if config.customization_media is not None:
            virt.attach_media(machine_id, config.customization_media)
        virt.set_boot_order(machine_id, ["disk"])
        virt.start(machine_id)
        logger.info("Started customization VM %s", vm_name)

        self._wait_for_power_off(machine_id, vm_name, token)

        ledger.release(vm)
        ledger.release(share)
        ledger.release(account)
        builder.reattach(volume)

    def _wait_for_power_off(
        self,
        machine_id: str,
        vm_name: str,
        token: CancellationToken,
    ) -> None:
        """Poll the VM until it powers off.

        Raises:
            VmTimeoutError: If ``vm_timeout`` elapses first.
            BuildCancelledError: If cancelled while waiting.
        """
        virt = self.providers.virtualization
        timeout = float(self.settings.vm_timeout)
        deadline = time.monotonic() + timeout
        polls = 0

        while True:
            state = virt.power_state(machine_id)
            if state == PowerState.OFF:
                logger.info("VM %s powered off after %d poll(s)", vm_name, polls)
                return
            if time.monotonic() >= deadline:
                raise VmTimeoutError(vm_name, timeout)
            polls += 1
            logger.debug("VM %s is %s; waiting", vm_name, state.value)
            if token.wait(self.settings.vm_poll_interval):
                raise BuildCancelledError(token.reason or "cancelled")

    def _capture(self, ctx: _BuildContext, builder: VolumeBuilder) -> None:
        volume = ctx.volume
        if volume is None:
            raise StructuralError("No volume to capture", code="volume_missing")
        capture_dir = ctx.work_dir / "capture"
        capture_dir.mkdir(parents=True, exist_ok=True)
        output = capture_dir / ctx.config.artifact_name

        os_partition = volume.partition(PartitionRole.OS)
        logger.info("Capturing %s to %s", os_partition.device_path, output.name)
        ctx.artifact_path = self.providers.imaging.capture_volume(
            os_partition.device_path, output, ctx.config.effective_label
        )
        builder.detach_volume(volume)

    def _inject_drivers(
        self,
        ctx: _BuildContext,
        ledger: ResourceLedger,
        result: PipelineResult,
    ) -> None:
        if ctx.artifact_path is None:
            raise StructuralError("No captured artifact", code="artifact_missing")
        imaging = self.providers.imaging
        mount_dir = ctx.work_dir / "mnt" / "artifact"
        mount_dir.mkdir(parents=True, exist_ok=True)

        mounted = imaging.mount_image(ctx.artifact_path, 1, mount_dir)
        handle = MountedImageHandle(
            mount_path=mount_dir, source_path=ctx.artifact_path, discard=False
        )
        ledger.register(handle)

        injected = 0
        for name, path in ctx.driver_paths:
            try:
                imaging.inject_driver(mounted, path)
            except Exception as e:
                logger.error("Driver %s failed: %s", name, e)
                result.partial_failures.append(
                    PartialFailure(PipelineStage.INJECT_DRIVERS.value, name, str(e))
                )
                continue
            injected += 1

        ledger.release(handle, commit=True)
        logger.info("Injected %d of %d driver(s)", injected, len(ctx.driver_paths))

    def _optimize(self, ctx: _BuildContext) -> None:
        if ctx.artifact_path is None:
            raise StructuralError("No captured artifact", code="artifact_missing")
        self.providers.imaging.optimize_artifact(ctx.artifact_path)

    def _finalize(
        self,
        ctx: _BuildContext,
        session_id: str,
        fingerprint: BuildFingerprint,
        result: PipelineResult,
    ) -> None:
        if ctx.artifact_path is None:
            raise StructuralError("No captured artifact", code="artifact_missing")
        output_dir = self.settings.output_dir / session_id
        artifact = publish_artifact(
            ctx.artifact_path, output_dir, labels=[ctx.config.effective_label]
        )
        manifest = generate_manifest(
            artifact,
            session_id=session_id,
            fingerprint=fingerprint.key,
            config_snapshot=ctx.config.model_dump(mode="json"),
            cache_hit=result.cache_hit,
            partial_failures=result.partial_failures,
        )
        result.manifest_path = write_manifest(manifest, output_dir / MANIFEST_NAME)
        result.artifact = artifact


__all__ = [
    "MediaLayoutError",
    "Pipeline",
    "PipelineResult",
    "VmTimeoutError",
    "find_install_image",
]
