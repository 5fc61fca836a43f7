"""Resource ledger and crash recovery.

The ledger is the single owner of every external resource a build creates.
Components register a handle as soon as the resource exists and ask the
ledger to release it; they never tear resources down themselves. This keeps
the release-order logic in one place.

Every registration is committed to the database immediately, so the record
survives a crash. Recovery does not trust that record alone: the same crash
may have prevented it from being written. ``recover_orphaned()`` therefore
discovers leftovers by scanning the hypervisor, mounts, attached disks,
shares, accounts, hives and the working directory for names that follow the
session naming convention, and merges what it finds with whatever the
database still lists.
"""

from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from imageforge.config import Settings
from imageforge.db import get_session
from imageforge.ledger.handles import (
    EphemeralAccountHandle,
    MountedImageHandle,
    NetworkShareHandle,
    RegistryHiveHandle,
    ResourceHandle,
    VirtualDiskHandle,
    VirtualMachineHandle,
    WorkPathHandle,
    handle_from_payload,
    is_session_hive_key,
    is_session_resource_name,
)
from imageforge.ledger.marker import SessionActiveError, SessionMarker
from imageforge.ledger.models import BuildSessionRecord, LedgerEntry
from imageforge.providers import ProviderSet
from imageforge.retry import RetryPolicy
from imageforge.types import RELEASE_ORDER, PowerState, ResourceKind, SessionStatus

logger = logging.getLogger(__name__)

HandleKey = tuple[ResourceKind, str]


@dataclass
class ReleaseFailure:
    """A resource that could not be released."""

    kind: str
    resource: str
    error: str


@dataclass
class ReleaseReport:
    """Outcome of a release sweep.

    Attributes:
        released: Handles released, in release order.
        failures: Handles whose release failed permanently.
        marker_cleared: Whether the session marker was removed.
    """

    released: list[ResourceHandle] = field(default_factory=list)
    failures: list[ReleaseFailure] = field(default_factory=list)
    marker_cleared: bool = False

    @property
    def ok(self) -> bool:
        """Whether every release succeeded."""
        return not self.failures

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-compatible dict."""
        return {
            "released": [h.description for h in self.released],
            "failures": [
                {"kind": f.kind, "resource": f.resource, "error": f.error}
                for f in self.failures
            ],
            "marker_cleared": self.marker_cleared,
        }


def release_sort_key(handle: ResourceHandle) -> int:
    """Position of a handle's kind in the fixed release order."""
    return RELEASE_ORDER.index(handle.kind)


def _is_under(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


class ResourceLedger:
    """Process-wide, crash-durable record of external resources.

    Args:
        providers: Collaborators used to release and discover resources.
        settings: Application settings (work dir, retry delay).
        session_factory: Database session factory; ``None`` keeps the
            ledger in memory only.
        marker: Session marker released at the end of a full sweep.
        retry: Retry policy for releases (defaults to one retry after
            ``settings.release_retry_delay``).
    """

    def __init__(
        self,
        providers: ProviderSet,
        settings: Settings,
        session_factory: sessionmaker[Session] | None = None,
        marker: SessionMarker | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._providers = providers
        self._settings = settings
        self._session_factory = session_factory
        self.marker = marker or SessionMarker(settings.marker_path)
        self._retry = retry or RetryPolicy(
            attempts=2,
            backoff=settings.release_retry_delay,
            retry_on=(Exception,),
        )
        self._handles: dict[HandleKey, ResourceHandle] = {}
        self._lock = threading.RLock()
        self._session_pk: int | None = None
        self.session_id: str | None = None

    # ------------------------------------------------------------------
    # Session bookkeeping
    # ------------------------------------------------------------------

    def open_session(self, session_id: str, fingerprint: str, work_dir: Path) -> None:
        """Start recording resources for a new build session.

        Args:
            session_id: Session identifier.
            fingerprint: Configuration fingerprint key.
            work_dir: Per-session working directory.
        """
        self.session_id = session_id
        if self._session_factory is None:
            return
        with get_session(self._session_factory) as db:
            record = BuildSessionRecord(
                session_id=session_id,
                fingerprint=fingerprint,
                work_dir=str(work_dir),
                status=SessionStatus.RUNNING.value,
            )
            db.add(record)
            db.flush()
            self._session_pk = record.id
        logger.info("Opened build session %s", session_id)

    def finish_session(
        self,
        status: SessionStatus,
        failed_stage: str | None = None,
        error_code: str | None = None,
        message: str | None = None,
        cache_hit: bool = False,
        artifact_path: Path | None = None,
        summary: dict[str, object] | None = None,
    ) -> None:
        """Record the terminal status of the current session."""
        if self._session_factory is None or self._session_pk is None:
            return
        with get_session(self._session_factory) as db:
            record = db.get(BuildSessionRecord, self._session_pk)
            if record is None:
                logger.warning("Session record %s disappeared", self.session_id)
                return
            record.mark_finished(status, failed_stage, error_code, message)
            record.cache_hit = cache_hit
            record.artifact_path = str(artifact_path) if artifact_path else None
            record.summary = summary

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, handle: ResourceHandle) -> ResourceHandle:
        """Record a newly created resource.

        Must be called before the creating call returns control to the
        orchestrator.

        Args:
            handle: Handle of the created resource.

        Returns:
            The same handle, for call chaining.
        """
        key: HandleKey = (handle.kind, handle.key)
        with self._lock:
            self._handles[key] = handle
            if self._session_factory is not None and self._session_pk is not None:
                with get_session(self._session_factory) as db:
                    existing = db.execute(
                        select(LedgerEntry).where(
                            LedgerEntry.session_pk == self._session_pk,
                            LedgerEntry.kind == handle.kind.value,
                            LedgerEntry.resource_key == handle.key,
                        )
                    ).scalar_one_or_none()
                    if existing is None:
                        db.add(
                            LedgerEntry(
                                session_pk=self._session_pk,
                                kind=handle.kind.value,
                                resource_key=handle.key,
                                payload=handle.to_payload(),
                            )
                        )
                    else:
                        existing.payload = handle.to_payload()
        logger.debug("Registered %s", handle.description)
        return handle

    def deregister(self, handle: ResourceHandle) -> None:
        """Forget a resource whose release has been confirmed."""
        key: HandleKey = (handle.kind, handle.key)
        with self._lock:
            self._handles.pop(key, None)
            self._delete_entries([key])
        logger.debug("Deregistered %s", handle.description)

    def handles(self, kind: ResourceKind | None = None) -> list[ResourceHandle]:
        """Return registered handles, optionally filtered by kind."""
        with self._lock:
            return [h for h in self._handles.values() if kind is None or h.kind == kind]

    def __len__(self) -> int:
        return len(self._handles)

    def _delete_entries(self, keys: list[HandleKey], any_session: bool = False) -> None:
        if self._session_factory is None or not keys:
            return
        if self._session_pk is None and not any_session:
            return
        with get_session(self._session_factory) as db:
            for kind, resource_key in keys:
                stmt = delete(LedgerEntry).where(
                    LedgerEntry.kind == kind.value,
                    LedgerEntry.resource_key == resource_key,
                )
                if not any_session:
                    stmt = stmt.where(LedgerEntry.session_pk == self._session_pk)
                db.execute(stmt)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(self, handle: ResourceHandle, commit: bool = False) -> None:
        """Release one resource, then deregister it.

        Args:
            handle: Handle to release.
            commit: For mounted images, commit changes instead of discarding.

        Raises:
            Exception: The provider error if the release fails after retry.
        """
        self._retry.call(
            lambda: self._release_one(handle, commit=commit),
            description=f"Release of {handle.description}",
        )
        self.deregister(handle)

    def release_all(self, release_marker: bool = True) -> ReleaseReport:
        """Release every registered resource in the fixed order.

        Failures are logged and collected; they never abort the sweep. The
        session marker is removed last and only if every release succeeded,
        so an incomplete cleanup is picked up by recovery on the next start.

        Args:
            release_marker: Remove the session marker after the sweep.

        Returns:
            ReleaseReport describing the sweep.
        """
        with self._lock:
            # Reverse registration order within a kind (last created, first released)
            pending = list(reversed(self._handles.values()))
        pending.sort(key=release_sort_key)

        report = self._sweep(pending, deregister=self.deregister)

        if release_marker and self.marker.held:
            self._release_marker(report, stale=False)
        return report

    def _sweep(
        self,
        pending: Sequence[ResourceHandle],
        deregister: Callable[[ResourceHandle], None],
    ) -> ReleaseReport:
        report = ReleaseReport()
        if pending:
            logger.info("Releasing %d resource(s)", len(pending))
        for handle in pending:
            try:
                self._retry.call(
                    lambda h=handle: self._release_one(h, commit=False),
                    description=f"Release of {handle.description}",
                )
            except Exception as e:
                logger.warning("Could not release %s: %s", handle.description, e)
                report.failures.append(
                    ReleaseFailure(kind=handle.kind.value, resource=handle.key, error=str(e))
                )
                continue
            deregister(handle)
            report.released.append(handle)
            logger.info("Released %s", handle.description)
        return report

    def _release_marker(self, report: ReleaseReport, stale: bool) -> None:
        if not report.ok:
            logger.warning(
                "%d resource(s) could not be released; keeping session marker %s "
                "so recovery runs at next start",
                len(report.failures),
                self.marker.path,
            )
            self.marker.abandon()
            return
        if stale:
            self.marker.clear_stale()
        else:
            self.marker.release()
        report.marker_cleared = True

    def _release_one(self, handle: ResourceHandle, commit: bool) -> None:
        """Tear down a single resource. Safe to call on an absent resource."""
        p = self._providers

        if isinstance(handle, VirtualMachineHandle):
            if handle.machine_id in p.virtualization.list_machines():
                state = p.virtualization.power_state(handle.machine_id)
                if state != PowerState.OFF:
                    logger.info("Stopping VM %s (%s)", handle.name, state.value)
                    p.virtualization.stop(handle.machine_id, force=True)
                p.virtualization.remove(handle.machine_id)
            if handle.credential_path is not None:
                handle.credential_path.unlink(missing_ok=True)

        elif isinstance(handle, MountedImageHandle):
            mounted = {m.mount_path for m in p.imaging.list_mounts()}
            if handle.mount_path in mounted:
                # Sweeps always discard; only an explicit release may commit
                p.imaging.dismount_image(handle.mount_path, commit=commit)

        elif isinstance(handle, VirtualDiskHandle):
            if handle.path in set(p.partitioning.list_attached_disks()):
                p.partitioning.detach_disk(handle.path)

        elif isinstance(handle, NetworkShareHandle):
            if handle.name in p.host.list_shares():
                p.host.remove_share(handle.name)

        elif isinstance(handle, EphemeralAccountHandle):
            if handle.name in p.host.list_accounts():
                p.host.remove_account(handle.name)

        elif isinstance(handle, RegistryHiveHandle):
            if handle.mount_key in p.host.list_hives():
                p.host.unload_hive(handle.mount_key)

        elif isinstance(handle, WorkPathHandle):
            if handle.path.is_dir() and not handle.path.is_symlink():
                shutil.rmtree(handle.path)
            elif handle.path.exists() or handle.path.is_symlink():
                handle.path.unlink()

        else:
            raise TypeError(f"Unsupported handle type: {type(handle).__name__}")

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def discover(self) -> list[ResourceHandle]:
        """Find leftover resources by scanning the host.

        Only resources that follow the session naming convention, or live
        under the working directory, are returned.

        Returns:
            Discovered handles (unordered).
        """
        p = self._providers
        work_dir = self._settings.work_dir
        found: list[ResourceHandle] = []

        def scan(what: str, func: Callable[[], None]) -> None:
            try:
                func()
            except Exception as e:
                logger.warning("Recovery scan of %s failed: %s", what, e)

        def vms() -> None:
            for machine_id, name in p.virtualization.list_machines().items():
                if is_session_resource_name(name):
                    found.append(VirtualMachineHandle(machine_id=machine_id, name=name))

        def mounts() -> None:
            for m in p.imaging.list_mounts():
                if _is_under(m.mount_path, work_dir):
                    found.append(
                        MountedImageHandle(mount_path=m.mount_path, source_path=m.source_path)
                    )

        def disks() -> None:
            for disk in p.partitioning.list_attached_disks():
                if _is_under(disk, work_dir):
                    found.append(VirtualDiskHandle(path=disk, attached=True))

        def shares() -> None:
            for name, path in p.host.list_shares().items():
                if is_session_resource_name(name):
                    found.append(NetworkShareHandle(name=name, path=path))

        def accounts() -> None:
            for name in p.host.list_accounts():
                if is_session_resource_name(name):
                    found.append(EphemeralAccountHandle(name=name))

        def hives() -> None:
            for mount_key, hive_file in p.host.list_hives().items():
                if is_session_hive_key(mount_key):
                    found.append(RegistryHiveHandle(mount_key=mount_key, hive_file=hive_file))

        def work_paths() -> None:
            sessions_dir = self._settings.sessions_dir
            if sessions_dir.is_dir():
                for child in sorted(sessions_dir.iterdir()):
                    found.append(WorkPathHandle(path=child))

        scan("virtual machines", vms)
        scan("mounted images", mounts)
        scan("attached disks", disks)
        scan("network shares", shares)
        scan("accounts", accounts)
        scan("registry hives", hives)
        scan("working directory", work_paths)
        return found

    def _recorded_handles(self) -> list[ResourceHandle]:
        """Handles still listed in the database from earlier sessions."""
        if self._session_factory is None:
            return []
        handles: list[ResourceHandle] = []
        with get_session(self._session_factory) as db:
            for entry in db.execute(select(LedgerEntry)).scalars():
                try:
                    handles.append(handle_from_payload(entry.kind, dict(entry.payload)))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Ignoring corrupt ledger entry %s: %s", entry.id, e)
        return handles

    def _abort_stale_sessions(self) -> int:
        if self._session_factory is None:
            return 0
        count = 0
        with get_session(self._session_factory) as db:
            stmt = select(BuildSessionRecord).where(
                BuildSessionRecord.status == SessionStatus.RUNNING.value
            )
            if self._session_pk is not None:
                stmt = stmt.where(BuildSessionRecord.id != self._session_pk)
            for record in db.execute(stmt).scalars():
                record.mark_finished(
                    SessionStatus.ABORTED,
                    error_code="unclean_exit",
                    message="Session ended without clean shutdown; resources recovered",
                )
                count += 1
        return count

    def recover_orphaned(self) -> ReleaseReport:
        """Tear down resources left behind by a session that did not exit cleanly.

        Discovered and recorded resources are merged, released in the fixed
        order with the normal release logic, and the stale marker is cleared
        once everything is gone. Running it again finds nothing to do.

        Returns:
            ReleaseReport of the recovery sweep.

        Raises:
            SessionActiveError: If a live session still holds the marker.
        """
        if self.marker.is_locked_elsewhere():
            raise SessionActiveError(self.marker.path)

        info = self.marker.read()
        if info is not None:
            logger.info(
                "Recovering after unclean exit of session %s (pid %d)",
                info.session_id,
                info.pid,
            )

        merged: dict[HandleKey, ResourceHandle] = {}
        for handle in self.discover() + self._recorded_handles():
            # Recorded handles carry teardown detail (credential files) scans cannot see
            merged[(handle.kind, handle.key)] = handle
        pending = sorted(merged.values(), key=release_sort_key)

        if pending:
            logger.info("Found %d orphaned resource(s)", len(pending))
        else:
            logger.info("No orphaned resources found")

        report = self._sweep(
            pending,
            deregister=lambda h: self._delete_entries([(h.kind, h.key)], any_session=True),
        )

        aborted = self._abort_stale_sessions()
        if aborted:
            logger.info("Marked %d unfinished session(s) as aborted", aborted)

        if self.marker.exists():
            self._release_marker(report, stale=True)
        else:
            report.marker_cleared = report.ok

        return report

    def summary(self) -> dict[str, int]:
        """Count registered handles per kind."""
        counts: dict[str, int] = {}
        for handle in self.handles():
            counts[handle.kind.value] = counts.get(handle.kind.value, 0) + 1
        return counts


__all__ = ["ReleaseFailure", "ReleaseReport", "ResourceLedger", "release_sort_key"]
