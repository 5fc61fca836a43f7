"""Error taxonomy for imageforge.

Errors fall into four families:

- Transient: network timeouts, busy resources. Retried locally with backoff
  and only surfaced once retries are exhausted.
- Structural: bad configuration or input (no matching image index, disk too
  small, required recovery image missing). Fails the current stage, triggers
  full cleanup and is surfaced with enough context to fix the configuration.
- Fatal/environmental: a required tool or platform feature is unavailable.
  Detected during pre-flight, before any resource is created.
- Cancellation: user abort or build timeout.

Partial failures (one update or driver package failing) are not exceptions;
they are recorded as ``imageforge.types.PartialFailure`` entries.
"""

from __future__ import annotations


class ImageForgeError(Exception):
    """Base error for all imageforge failures."""

    def __init__(self, message: str, code: str = "imageforge_error") -> None:
        """Initialize ImageForgeError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class TransientError(ImageForgeError):
    """Temporary failure that may succeed when retried."""

    def __init__(self, message: str, code: str = "transient_error") -> None:
        super().__init__(message, code)


class StructuralError(ImageForgeError):
    """Configuration or input problem that cannot succeed on retry."""

    def __init__(self, message: str, code: str = "structural_error") -> None:
        super().__init__(message, code)


class FatalEnvironmentError(ImageForgeError):
    """Host environment cannot run a build at all."""

    def __init__(self, message: str, code: str = "environment_error") -> None:
        super().__init__(message, code)


class ProviderError(ImageForgeError):
    """An external collaborator (imaging, virtualization, ...) call failed."""

    def __init__(
        self,
        message: str,
        code: str = "provider_error",
        resource: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.resource = resource


class BuildCancelledError(ImageForgeError):
    """Raised when the build is cancelled by the user or times out."""

    def __init__(self, reason: str = "cancelled", code: str = "cancelled") -> None:
        super().__init__(f"Build cancelled: {reason}", code)
        self.reason = reason


class StageError(ImageForgeError):
    """A pipeline stage failed.

    Wraps the underlying error with the stage and resource that failed so a
    single terminal message carries the remediation-relevant detail.
    """

    def __init__(
        self,
        stage: str,
        cause: BaseException,
        resource: str | None = None,
    ) -> None:
        self.stage = stage
        self.cause = cause
        self.resource = resource or getattr(cause, "resource", None)
        where = f" ({self.resource})" if self.resource else ""
        code = getattr(cause, "code", "stage_failed")
        super().__init__(f"Stage '{stage}' failed{where}: {cause}", code)


__all__ = [
    "BuildCancelledError",
    "FatalEnvironmentError",
    "ImageForgeError",
    "ProviderError",
    "StageError",
    "StructuralError",
    "TransientError",
]
