"""Retry/backoff policy shared by every external-call wrapper.

A single policy object is injected into downloads, resource releases and
service readiness checks instead of each call site implementing its own loop.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from imageforge.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Linear backoff retry policy.

    The delay before attempt ``n + 1`` is ``backoff * n`` seconds, so the
    first retry waits one step, the second two steps, and so on.

    Attributes:
        attempts: Total number of attempts (1 = no retry).
        backoff: Backoff step in seconds.
        retry_on: Exception types that trigger another attempt.
        sleep: Sleep function (injectable for tests).
    """

    attempts: int = 3
    backoff: float = 5.0
    retry_on: tuple[type[BaseException], ...] = (TransientError,)
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def __post_init__(self) -> None:
        """Validate policy values."""
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.backoff < 0:
            raise ValueError("backoff must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Return the delay to wait after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed.

        Returns:
            Delay in seconds.
        """
        return self.backoff * attempt

    def call(
        self,
        func: Callable[[], T],
        description: str = "operation",
        on_failure: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Call ``func`` until it succeeds or attempts are exhausted.

        Args:
            func: Zero-argument callable to invoke.
            description: Human-readable name used in log messages.
            on_failure: Optional callback invoked with (attempt, error) after
                every failed attempt.

        Returns:
            The return value of ``func``.

        Raises:
            The last error raised by ``func`` once attempts are exhausted, or
            immediately for errors not listed in ``retry_on``.
        """
        for attempt in range(1, self.attempts + 1):
            try:
                return func()
            except self.retry_on as e:
                if on_failure is not None:
                    on_failure(attempt, e)
                if attempt >= self.attempts:
                    logger.warning(
                        "%s failed after %d attempt(s): %s",
                        description,
                        attempt,
                        e,
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    description,
                    attempt,
                    self.attempts,
                    e,
                    delay,
                )
                if delay > 0:
                    self.sleep(delay)

        # attempts >= 1 guarantees the loop returns or raises
        raise AssertionError("unreachable")

    def with_attempts(self, attempts: int) -> RetryPolicy:
        """Return a copy of this policy with a different attempt count."""
        return RetryPolicy(
            attempts=attempts,
            backoff=self.backoff,
            retry_on=self.retry_on,
            sleep=self.sleep,
        )


__all__ = ["RetryPolicy"]
