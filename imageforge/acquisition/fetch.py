"""Resilient downloads with layered fallback.

This module handles:
- Ordered download methods (resumable HTTP, fresh streaming HTTP, curl)
- Linear-backoff retries per method via the shared RetryPolicy
- Size and checksum verification
- Bounded parallel downloads for update and driver packages

Every method writes to ``<destination>.part`` and renames on completion, so
a file at the destination path is always complete.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import subprocess
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

import httpx

from imageforge.config import Settings
from imageforge.errors import TransientError
from imageforge.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Chunk size for downloads and hashing (bytes)
DOWNLOAD_CHUNK_SIZE = 1024 * 1024  # 1 MiB

# Connect timeout for HTTP methods (seconds)
CONNECT_TIMEOUT = 30.0


class DownloadError(TransientError):
    """Raised when a download fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        """Initialize DownloadError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message, code)


class VerificationError(DownloadError):
    """Raised when a downloaded file fails size or checksum verification."""

    def __init__(self, message: str, code: str = "verification_error") -> None:
        super().__init__(message, code)


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def part_path(destination: Path) -> Path:
    """Return the in-progress path for a destination."""
    return destination.with_name(destination.name + ".part")


def is_remote(source: str | Path) -> bool:
    """Check whether a source is a URL rather than a local path."""
    return isinstance(source, str) and "://" in source and not source.startswith("file://")


@dataclass
class DownloadRequest:
    """One file to download."""

    source: str | Path
    destination: Path
    expected_size: int | None = None
    sha256: str | None = None


@dataclass
class DownloadTask:
    """Outcome of one download.

    Attributes:
        source: URL or local path.
        destination: Final file path.
        method: Method that produced the file ('local', 'reused', or a
            transport name), or None if every method failed.
        attempts: Total attempts across all methods.
        last_error: Last error message, if any attempt failed.
        size_bytes: Size of the downloaded file.
    """

    source: str
    destination: Path
    method: str | None = None
    attempts: int = 0
    last_error: str | None = None
    size_bytes: int = 0

    @property
    def succeeded(self) -> bool:
        """Whether the destination holds a verified file."""
        return self.method is not None

    @property
    def reused(self) -> bool:
        """Whether an existing complete file was reused."""
        return self.method == "reused"


@dataclass
class BatchDownloadResult:
    """Aggregated outcome of ``Fetcher.fetch_many``."""

    tasks: list[DownloadTask] = field(default_factory=list)
    failures: dict[Path, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether every download succeeded."""
        return not self.failures


class Transport:
    """Base class for download methods."""

    name: ClassVar[str]

    def download(self, url: str, part: Path) -> None:
        """Download ``url`` into ``part``.

        Raises:
            DownloadError: If the transfer fails.
        """
        raise NotImplementedError


def _http_error(url: str, e: httpx.HTTPError) -> DownloadError:
    if isinstance(e, httpx.HTTPStatusError):
        return DownloadError(
            f"HTTP error downloading {url}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        )
    if isinstance(e, httpx.TimeoutException):
        return DownloadError(f"Timeout downloading {url}", code="timeout")
    return DownloadError(f"Network error downloading {url}: {e}", code="network_error")


class StreamTransport(Transport):
    """Fresh streaming HTTP GET; discards any partial data."""

    name = "stream"

    def __init__(self, client: httpx.Client) -> None:
        self._client = client

    def download(self, url: str, part: Path) -> None:
        try:
            with self._client.stream("GET", url) as response:
                response.raise_for_status()
                with part.open("wb") as f:
                    for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                        f.write(chunk)
        except httpx.HTTPError as e:
            raise _http_error(url, e) from e


class ResumableTransport(Transport):
    """HTTP GET resuming a previous partial file with a Range request."""

    name = "resumable"

    def __init__(self, client: httpx.Client) -> None:
        self._client = client

    def download(self, url: str, part: Path) -> None:
        offset = part.stat().st_size if part.exists() else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}

        try:
            with self._client.stream("GET", url, headers=headers) as response:
                if response.status_code == 416 and offset:
                    # Server has nothing past our offset; the part file is complete
                    logger.debug("Range not satisfiable for %s; part file complete", url)
                    return
                response.raise_for_status()

                if offset and response.status_code == 206:
                    logger.info("Resuming %s at byte %d", url, offset)
                    mode = "ab"
                else:
                    mode = "wb"

                with part.open(mode) as f:
                    for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                        f.write(chunk)
        except httpx.HTTPError as e:
            raise _http_error(url, e) from e


class CurlTransport(Transport):
    """Low-level fallback through the system curl client."""

    name = "curl"

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout

    def download(self, url: str, part: Path) -> None:
        cmd = ["curl", "--fail", "--location", "--silent", "--show-error"]
        cmd += ["--continue-at", "-", "--output", str(part), url]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise DownloadError("curl is not installed", code="curl_missing") from e
        except subprocess.TimeoutExpired as e:
            raise DownloadError(f"Timeout downloading {url} with curl", code="timeout") from e

        if result.returncode != 0:
            raise DownloadError(
                f"curl failed for {url} (exit {result.returncode}): {result.stderr.strip()}",
                code="curl_error",
            )


class Fetcher:
    """Downloads files through an ordered list of methods.

    Each method gets the full retry budget of the shared policy before the
    next method is tried.

    Args:
        settings: Application settings.
        client: HTTP client (created from settings if omitted).
        retry: Retry policy (built from settings if omitted).
        methods: Method names in fallback order (defaults to
            ``settings.download_methods``).
    """

    def __init__(
        self,
        settings: Settings,
        client: httpx.Client | None = None,
        retry: RetryPolicy | None = None,
        methods: Sequence[str] | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.Client(
            follow_redirects=True,
            timeout=httpx.Timeout(settings.download_timeout, connect=CONNECT_TIMEOUT),
        )
        self._retry = retry or RetryPolicy(
            attempts=settings.download_retries,
            backoff=settings.download_backoff,
            retry_on=(DownloadError,),
        )
        transports: dict[str, Transport] = {
            ResumableTransport.name: ResumableTransport(self._client),
            StreamTransport.name: StreamTransport(self._client),
            CurlTransport.name: CurlTransport(settings.download_timeout),
        }
        names = list(methods if methods is not None else settings.download_methods)
        unknown = [n for n in names if n not in transports]
        if unknown:
            raise ValueError(f"Unknown download method(s): {', '.join(unknown)}")
        if not names:
            raise ValueError("At least one download method is required")
        self._transports = [transports[n] for n in names]

    def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> Fetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def method_names(self) -> list[str]:
        """Configured method names in fallback order."""
        return [t.name for t in self._transports]

    def fetch(
        self,
        source: str | Path,
        destination: Path,
        retries: int | None = None,
        expected_size: int | None = None,
        sha256: str | None = None,
    ) -> DownloadTask:
        """Download (or copy) ``source`` to ``destination``.

        Args:
            source: URL, ``file://`` URL or local path.
            destination: Final file path.
            retries: Attempts per method (defaults to the policy's).
            expected_size: Expected size in bytes, if known.
            sha256: Expected SHA-256 checksum, if known.

        Returns:
            DownloadTask describing the successful download.

        Raises:
            DownloadError: If every method is exhausted.
        """
        task = DownloadTask(source=str(source), destination=destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        if self._is_complete(destination, expected_size, sha256):
            logger.info("Reusing existing download %s", destination)
            task.method = "reused"
            task.size_bytes = destination.stat().st_size
            return task

        policy = self._retry if retries is None else self._retry.with_attempts(retries)

        def count(attempt: int, error: BaseException) -> None:
            task.attempts += 1
            task.last_error = str(error)

        if not is_remote(source):
            local = Path(str(source).removeprefix("file://"))
            try:
                policy.call(
                    lambda: self._copy_local(local, destination, expected_size, sha256),
                    description=f"Copy of {local}",
                    on_failure=count,
                )
            except VerificationError:
                raise
            except DownloadError as e:
                raise DownloadError(
                    f"Copy of {local} failed: {task.last_error}", code="download_exhausted"
                ) from e
            task.attempts += 1
            task.method = "local"
            task.size_bytes = destination.stat().st_size
            return task

        url = str(source)
        for transport in self._transports:
            try:
                policy.call(
                    lambda t=transport: self._attempt(t, url, destination, expected_size, sha256),
                    description=f"Download of {url} via {transport.name}",
                    on_failure=count,
                )
            except DownloadError as e:
                logger.warning(
                    "Method '%s' exhausted for %s: %s", transport.name, url, e
                )
                continue
            task.attempts += 1
            task.method = transport.name
            task.size_bytes = destination.stat().st_size
            logger.info(
                "Downloaded %s (%d bytes) via %s", destination.name, task.size_bytes, transport.name
            )
            return task

        raise DownloadError(
            f"All download methods failed for {url}: {task.last_error}",
            code="download_exhausted",
        )

    def fetch_many(self, requests: Sequence[DownloadRequest]) -> BatchDownloadResult:
        """Download several files in parallel.

        Concurrency is bounded by ``settings.max_concurrent_downloads``.
        Failures are aggregated rather than raised.

        Args:
            requests: Files to download.

        Returns:
            BatchDownloadResult with one task per successful download and
            error messages keyed by destination for failures.
        """
        result = BatchDownloadResult()
        if not requests:
            return result

        workers = min(self._settings.max_concurrent_downloads, len(requests))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as pool:
            futures = {
                pool.submit(
                    self.fetch,
                    req.source,
                    req.destination,
                    None,
                    req.expected_size,
                    req.sha256,
                ): req
                for req in requests
            }
            for future in as_completed(futures):
                req = futures[future]
                try:
                    result.tasks.append(future.result())
                except (DownloadError, OSError) as e:
                    logger.error("Download of %s failed: %s", req.source, e)
                    result.failures[req.destination] = str(e)

        return result

    def _attempt(
        self,
        transport: Transport,
        url: str,
        destination: Path,
        expected_size: int | None,
        sha256: str | None,
    ) -> None:
        part = part_path(destination)
        transport.download(url, part)
        if not part.exists():
            raise DownloadError(f"{transport.name} produced no file for {url}", code="no_output")
        try:
            self._verify(part, expected_size, sha256, source=url)
        except VerificationError:
            # A corrupt partial file must not be resumed
            part.unlink(missing_ok=True)
            raise
        part.replace(destination)

    def _copy_local(
        self,
        source: Path,
        destination: Path,
        expected_size: int | None,
        sha256: str | None,
    ) -> None:
        if not source.is_file():
            raise DownloadError(f"Source file not found: {source}", code="source_missing")
        if source.resolve() == destination.resolve():
            self._verify(destination, expected_size, sha256, source=str(source))
            return
        part = part_path(destination)
        try:
            shutil.copyfile(source, part)
        except OSError as e:
            part.unlink(missing_ok=True)
            raise DownloadError(f"Copy of {source} failed: {e}", code="copy_error") from e
        try:
            self._verify(part, expected_size, sha256, source=str(source))
        except VerificationError:
            part.unlink(missing_ok=True)
            raise
        part.replace(destination)

    @staticmethod
    def _verify(
        path: Path,
        expected_size: int | None,
        sha256: str | None,
        source: str,
    ) -> None:
        size = path.stat().st_size
        if expected_size is not None and size != expected_size:
            raise VerificationError(
                f"Size mismatch for {source}: expected {expected_size}, got {size}"
            )
        if sha256:
            computed = compute_file_sha256(path)
            if computed != sha256.lower():
                raise VerificationError(
                    f"Checksum mismatch for {source}: expected {sha256}, got {computed}"
                )

    @staticmethod
    def _is_complete(destination: Path, expected_size: int | None, sha256: str | None) -> bool:
        if not destination.is_file():
            return False
        if expected_size is not None and destination.stat().st_size != expected_size:
            return False
        if sha256 and compute_file_sha256(destination) != sha256.lower():
            return False
        return True


__all__ = [
    "BatchDownloadResult",
    "CurlTransport",
    "DownloadError",
    "DownloadRequest",
    "DownloadTask",
    "Fetcher",
    "ResumableTransport",
    "StreamTransport",
    "Transport",
    "VerificationError",
    "compute_file_sha256",
]
