"""Session marker file.

The marker's presence means a build session is active or ended uncleanly.
A live session holds an exclusive ``flock`` on the marker for its whole
lifetime, which makes the marker a host-wide mutual-exclusion lock:

- file absent: no session, a new one may start;
- file present and locked: another process is building, refuse to start;
- file present and unlocked: the owner died, recovery must run first.

The marker's JSON content (session id, pid, fingerprint) is informational
only; recovery never depends on it being readable.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from imageforge.errors import ImageForgeError

logger = logging.getLogger(__name__)


class SessionActiveError(ImageForgeError):
    """Raised when another live process holds the session marker."""

    def __init__(self, marker_path: Path, code: str = "session_active") -> None:
        super().__init__(
            f"Another build session is active (marker locked: {marker_path})", code
        )
        self.marker_path = marker_path


class StaleSessionError(ImageForgeError):
    """Raised when a marker from an unclean prior exit is present."""

    def __init__(
        self,
        marker_path: Path,
        info: MarkerInfo | None = None,
        code: str = "stale_session",
    ) -> None:
        owner = f" (session {info.session_id}, pid {info.pid})" if info else ""
        super().__init__(
            f"A previous build did not shut down cleanly{owner}; "
            f"run recovery before starting a new session (marker: {marker_path})",
            code,
        )
        self.marker_path = marker_path
        self.info = info


@dataclass(frozen=True)
class MarkerInfo:
    """Informational content of a session marker."""

    session_id: str
    pid: int
    fingerprint: str
    started_at: str


class SessionMarker:
    """Session marker acting as a host-wide session lock.

    Args:
        path: Marker file path.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        """Whether this process holds the marker lock."""
        return self._fd is not None

    def exists(self) -> bool:
        """Check whether the marker file is present."""
        return self.path.exists()

    def read(self) -> MarkerInfo | None:
        """Read the marker content.

        Returns:
            MarkerInfo, or None if the marker is absent or unreadable.
        """
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return MarkerInfo(
                session_id=str(data["session_id"]),
                pid=int(data["pid"]),
                fingerprint=str(data.get("fingerprint", "")),
                started_at=str(data.get("started_at", "")),
            )
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Session marker %s is unreadable: %s", self.path, e)
            return None

    def is_locked_elsewhere(self) -> bool:
        """Check whether another process holds the marker lock."""
        if self.held or not self.path.exists():
            return False
        try:
            fd = os.open(str(self.path), os.O_RDWR)
        except FileNotFoundError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        finally:
            os.close(fd)

    def acquire(self, session_id: str, fingerprint: str) -> None:
        """Create and lock the marker for a new session.

        Args:
            session_id: Identifier of the new session.
            fingerprint: Configuration fingerprint of the build.

        Raises:
            SessionActiveError: If another live process holds the marker.
            StaleSessionError: If a marker from a dead session is present.
        """
        if self.held:
            raise RuntimeError("session marker already held by this process")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        existed = self.path.exists()

        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise SessionActiveError(self.path) from None

        if existed:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            raise StaleSessionError(self.path, self.read())

        content = json.dumps(
            {
                "session_id": session_id,
                "pid": os.getpid(),
                "fingerprint": fingerprint,
                "started_at": datetime.now(timezone.utc).isoformat(),
            },
            sort_keys=True,
        )
        os.ftruncate(fd, 0)
        os.write(fd, content.encode("utf-8"))
        os.fsync(fd)

        self._fd = fd
        logger.debug("Session marker acquired: %s", self.path)

    def release(self) -> None:
        """Remove the marker and drop the lock.

        Does nothing unless this process holds the marker, so it never
        removes another session's lock. Idempotent.
        """
        if self._fd is None:
            return
        # Unlink while still locked so no other process sees a stale marker
        self.path.unlink(missing_ok=True)
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        logger.debug("Session marker released: %s", self.path)

    def abandon(self) -> None:
        """Drop the lock but leave the marker file for recovery. Idempotent."""
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        logger.warning("Session marker left in place for recovery: %s", self.path)

    def clear_stale(self) -> None:
        """Remove a marker left behind by a dead session.

        Raises:
            SessionActiveError: If a live process still holds the marker.
        """
        if self.held:
            return
        if self.is_locked_elsewhere():
            raise SessionActiveError(self.path)
        self.path.unlink(missing_ok=True)
        logger.info("Cleared stale session marker %s", self.path)


__all__ = [
    "MarkerInfo",
    "SessionActiveError",
    "SessionMarker",
    "StaleSessionError",
]
