"""Configuration settings for imageforge.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Settings are immutable for the duration of a build; they are passed
explicitly into every component constructor rather than read globally.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DownloadMethodName = Literal["resumable", "stream", "curl"]


def _default_state_dir() -> Path:
    """Return the default state directory."""
    return Path.home() / ".local" / "share" / "imageforge"


def _default_work_dir() -> Path:
    """Return the default working directory."""
    return _default_state_dir() / "work"


def _default_cache_dir() -> Path:
    """Return the default artifact cache directory."""
    return Path.home() / ".cache" / "imageforge" / "volumes"


def _default_output_dir() -> Path:
    """Return the default output directory for finished artifacts."""
    return _default_state_dir() / "artifacts"


def _default_download_dir() -> Path:
    """Return the default directory for downloaded media and packages."""
    return Path.home() / ".cache" / "imageforge" / "downloads"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = _default_state_dir() / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the IMGFORGE_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="IMGFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root working directory; holds the session marker and temporaries",
    )
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Artifact cache directory for patched base volumes",
    )
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Directory for finished image artifacts",
    )
    download_dir: Path = Field(
        default_factory=_default_download_dir,
        description="Directory for downloaded media, updates and drivers",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_file: Path | None = Field(
        default=None,
        description="Optional log file appended to in addition to the console",
    )

    # Operational modes
    cache_enabled: bool = Field(
        default=True,
        description="Reuse and store patched base volumes in the artifact cache",
    )
    auto_recover: bool = Field(
        default=True,
        description="Recover orphaned resources automatically at startup",
    )
    reserve_recovery_upfront: bool = Field(
        default=False,
        description="Reserve the recovery partition before applying the OS payload",
    )
    providers: str | None = Field(
        default=None,
        description="Provider factory as 'module:callable' returning a ProviderSet",
    )

    # Downloads
    max_concurrent_downloads: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Maximum concurrent package downloads",
    )
    download_retries: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Attempts per download method before falling back",
    )
    download_backoff: float = Field(
        default=5.0,
        ge=0,
        description="Linear backoff step in seconds between download attempts",
    )
    download_methods: list[DownloadMethodName] = Field(
        default_factory=lambda: ["resumable", "stream", "curl"],
        min_length=1,
        description="Ordered download transports to try",
    )

    # Cleanup
    release_retry_delay: float = Field(
        default=2.0,
        ge=0,
        description="Delay in seconds before retrying a failed release",
    )

    # Virtual machine
    vm_memory_mb: int = Field(default=4096, ge=1024, description="VM memory")
    vm_cpu_count: int = Field(default=2, ge=1, le=64, description="VM CPU count")
    vm_poll_interval: float = Field(
        default=10.0,
        gt=0,
        description="Seconds between VM power state polls",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single download attempt",
    )
    vm_timeout: int = Field(
        default=4 * 3600,
        ge=60,
        description="Timeout for guest customization",
    )
    build_timeout: int | None = Field(
        default=None,
        ge=60,
        description="Overall build timeout (no limit if not set)",
    )

    @property
    def marker_path(self) -> Path:
        """Path of the session marker file."""
        return self.work_dir / ".imageforge-session"

    @property
    def sessions_dir(self) -> Path:
        """Directory holding per-session working directories."""
        return self.work_dir / "sessions"


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["DownloadMethodName", "Settings", "get_settings", "print_settings_json"]
