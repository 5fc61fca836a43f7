"""Media acquisition and the patched-volume cache.

This package provides:
- Build fingerprints identifying a patched base volume
- Resilient downloads with layered fallback and bounded parallelism
- The append-only artifact cache
"""

from imageforge.acquisition.cache import ArtifactCache, CacheEntry
from imageforge.acquisition.fetch import (
    BatchDownloadResult,
    DownloadError,
    DownloadRequest,
    DownloadTask,
    Fetcher,
    VerificationError,
)
from imageforge.acquisition.fingerprint import BuildFingerprint

__all__ = [
    "ArtifactCache",
    "BatchDownloadResult",
    "BuildFingerprint",
    "CacheEntry",
    "DownloadError",
    "DownloadRequest",
    "DownloadTask",
    "Fetcher",
    "VerificationError",
]
