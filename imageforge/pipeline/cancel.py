"""Cancellation token shared by the pipeline and its poll loops.

Cancellation only stops new work from starting. Teardown of resources that
already exist always runs to completion.
"""

from __future__ import annotations

import threading
import time

from imageforge.errors import BuildCancelledError


class CancellationToken:
    """Thread-safe cancellation flag with an optional deadline.

    Args:
        timeout: Seconds until the token cancels itself (None = never).
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._lock = threading.Lock()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._timeout = timeout

    def cancel(self, reason: str = "cancelled by user") -> None:
        """Request cancellation. The first reason wins."""
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    def _check_deadline(self) -> None:
        if self._deadline is not None and not self._event.is_set():
            if time.monotonic() >= self._deadline:
                self.cancel(f"build timeout of {self._timeout:g}s exceeded")

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested or the deadline passed."""
        self._check_deadline()
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Reason given for cancellation."""
        return self._reason

    def raise_if_cancelled(self) -> None:
        """Raise if cancelled.

        Raises:
            BuildCancelledError: If cancellation was requested.
        """
        if self.cancelled:
            raise BuildCancelledError(self._reason or "cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``, waking early on cancellation.

        Returns:
            True if cancelled.
        """
        self._check_deadline()
        if self._deadline is not None:
            seconds = max(0.0, min(seconds, self._deadline - time.monotonic()))
        self._event.wait(seconds)
        return self.cancelled


__all__ = ["CancellationToken"]
