"""Build request definitions.

This module handles:
- The immutable BuildConfig schema
- Loading build configurations from YAML/JSON
"""

from imageforge.builds.schema import BuildConfig, DriverSource, UpdateSource

__all__ = ["BuildConfig", "DriverSource", "UpdateSource"]
