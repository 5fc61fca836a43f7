"""Fingerprinted cache of patched base volumes.

Each entry is an image file ``<entry_id>.<ext>`` plus a JSON record
``<entry_id>.json`` in the cache directory. The image is written under a
temporary name and renamed before the record is written, so an entry is
visible only once it is complete. Entries are never modified after they are
written; a newer entry for the same fingerprint simply wins on lookup.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from imageforge.acquisition.fetch import compute_file_sha256
from imageforge.acquisition.fingerprint import BuildFingerprint

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".cache.lock"
TEMP_PREFIX = "."


@contextmanager
def cache_lock(cache_dir: Path, timeout: float | None = None) -> Iterator[None]:
    """Acquire the cache directory write lock.

    Args:
        cache_dir: Cache directory.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    cache_dir.mkdir(parents=True, exist_ok=True)
    lock_file = cache_dir / LOCK_FILE_NAME

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(f"Timeout waiting for cache lock in {cache_dir}") from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


@dataclass(frozen=True)
class CacheEntry:
    """One cached patched volume.

    Attributes:
        entry_id: Unique entry identifier (sortable by creation time).
        fingerprint: Fingerprint of the volume content.
        image_path: Path of the cached image file.
        created_at: Creation time (ISO 8601, UTC).
        size_bytes: Image size in bytes.
        sha256: Image SHA-256 checksum.
    """

    entry_id: str
    fingerprint: BuildFingerprint
    image_path: Path
    created_at: str
    size_bytes: int
    sha256: str

    @property
    def key(self) -> str:
        """Fingerprint key of this entry."""
        return self.fingerprint.key

    @property
    def record_path(self) -> Path:
        """Path of the JSON record."""
        return self.image_path.with_name(f"{self.entry_id}.json")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "entry_id": self.entry_id,
            "key": self.key,
            "components": self.fingerprint.to_dict(),
            "image": self.image_path.name,
            "created_at": self.created_at,
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
        }

    @classmethod
    def from_record(cls, record_path: Path) -> CacheEntry:
        """Load an entry from its JSON record.

        Raises:
            ValueError: If the record is malformed.
            OSError: If the record cannot be read.
        """
        data = json.loads(record_path.read_text(encoding="utf-8"))
        try:
            return cls(
                entry_id=str(data["entry_id"]),
                fingerprint=BuildFingerprint.from_dict(data["components"]),
                image_path=record_path.parent / str(data["image"]),
                created_at=str(data["created_at"]),
                size_bytes=int(data["size_bytes"]),
                sha256=str(data["sha256"]),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed cache record {record_path.name}: {e}") from e


class ArtifactCache:
    """Append-only cache of patched base volumes.

    Args:
        cache_dir: Directory holding cache entries.
    """

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir

    def entries(self) -> list[CacheEntry]:
        """List complete entries, newest first.

        Unreadable records are skipped with a warning.
        """
        if not self.cache_dir.is_dir():
            return []

        found: list[CacheEntry] = []
        for record in self.cache_dir.glob("*.json"):
            if record.name.startswith(TEMP_PREFIX):
                continue
            try:
                found.append(CacheEntry.from_record(record))
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable cache record %s: %s", record.name, e)

        found.sort(key=lambda e: (e.created_at, e.entry_id), reverse=True)
        return found

    def lookup(self, fingerprint: BuildFingerprint) -> CacheEntry | None:
        """Find the newest entry whose components exactly match.

        Args:
            fingerprint: Fingerprint to look up.

        Returns:
            CacheEntry if found, None otherwise.
        """
        for entry in self.entries():
            if not entry.fingerprint.matches(fingerprint):
                continue
            if not entry.image_path.is_file():
                logger.warning("Cache entry %s has no image file; ignoring", entry.entry_id)
                continue
            if entry.image_path.stat().st_size != entry.size_bytes:
                logger.warning("Cache entry %s has wrong size; ignoring", entry.entry_id)
                continue
            logger.info(
                "Cache hit for %s: entry %s", fingerprint.short_key, entry.entry_id
            )
            return entry

        logger.info("Cache miss for %s", fingerprint.short_key)
        return None

    def store(
        self,
        fingerprint: BuildFingerprint,
        image_path: Path,
        move: bool = False,
    ) -> CacheEntry:
        """Add a new entry for ``image_path``.

        Args:
            fingerprint: Fingerprint of the image content.
            image_path: Image file to cache.
            move: Move the file instead of copying it.

        Returns:
            The new CacheEntry.

        Raises:
            FileNotFoundError: If ``image_path`` does not exist.
        """
        if not image_path.is_file():
            raise FileNotFoundError(f"Image not found: {image_path}")

        now = datetime.now(timezone.utc)
        entry_id = f"{now:%Y%m%dT%H%M%S%f}-{fingerprint.short_key}-{uuid.uuid4().hex[:6]}"
        suffix = image_path.suffix or ".img"

        with cache_lock(self.cache_dir):
            final_image = self.cache_dir / f"{entry_id}{suffix}"
            temp_image = self.cache_dir / f"{TEMP_PREFIX}{entry_id}{suffix}.tmp"
            try:
                if move:
                    shutil.move(str(image_path), temp_image)
                else:
                    shutil.copyfile(image_path, temp_image)
                checksum = compute_file_sha256(temp_image)
                size = temp_image.stat().st_size
                temp_image.replace(final_image)
            finally:
                temp_image.unlink(missing_ok=True)

            entry = CacheEntry(
                entry_id=entry_id,
                fingerprint=fingerprint,
                image_path=final_image,
                created_at=now.isoformat(),
                size_bytes=size,
                sha256=checksum,
            )

            # Record last, so the entry only becomes visible when complete
            temp_record = self.cache_dir / f"{TEMP_PREFIX}{entry_id}.json.tmp"
            temp_record.write_text(json.dumps(entry.to_dict(), indent=2), encoding="utf-8")
            temp_record.replace(entry.record_path)

        logger.info(
            "Cached volume %s as entry %s (%d bytes)",
            fingerprint.short_key,
            entry_id,
            size,
        )
        return entry

    def prune(self, keep: int) -> list[CacheEntry]:
        """Remove all but the ``keep`` newest entries.

        Leftover temporary files from interrupted stores are removed too.

        Args:
            keep: Number of newest entries to keep.

        Returns:
            Removed entries.
        """
        if keep < 0:
            raise ValueError("keep must not be negative")

        removed: list[CacheEntry] = []
        with cache_lock(self.cache_dir):
            for entry in self.entries()[keep:]:
                # Record first: a record without its image is never visible
                entry.record_path.unlink(missing_ok=True)
                entry.image_path.unlink(missing_ok=True)
                removed.append(entry)
                logger.info("Pruned cache entry %s", entry.entry_id)

            for leftover in self.cache_dir.glob(f"{TEMP_PREFIX}*.tmp"):
                leftover.unlink(missing_ok=True)
                logger.debug("Removed leftover temp file %s", leftover.name)

        return removed

    def total_size(self) -> int:
        """Total size of cached images in bytes."""
        return sum(e.size_bytes for e in self.entries())


__all__ = ["ArtifactCache", "CacheEntry", "cache_lock"]
