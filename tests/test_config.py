"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from imageforge.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.cache_dir == Path.home() / ".cache" / "imageforge" / "volumes"
        assert "sqlite" in settings.db_url
        assert settings.log_level == "INFO"
        assert settings.cache_enabled is True
        assert settings.auto_recover is True
        assert settings.reserve_recovery_upfront is False
        assert settings.download_methods == ["resumable", "stream", "curl"]
        assert settings.max_concurrent_downloads >= 1
        assert settings.build_timeout is None

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "IMGFORGE_LOG_LEVEL": "DEBUG",
                "IMGFORGE_CACHE_ENABLED": "false",
                "IMGFORGE_MAX_CONCURRENT_DOWNLOADS": "8",
                "IMGFORGE_DOWNLOAD_METHODS": '["stream", "curl"]',
            },
        ):
            settings = Settings()
            assert settings.log_level == "DEBUG"
            assert settings.cache_enabled is False
            assert settings.max_concurrent_downloads == 8
            assert settings.download_methods == ["stream", "curl"]

    def test_work_dir_derived_paths(self, tmp_path: Path) -> None:
        """Marker and sessions directory should live under the work dir."""
        settings = Settings(work_dir=tmp_path)
        assert settings.marker_path.parent == tmp_path
        assert settings.sessions_dir == tmp_path / "sessions"

    def test_invalid_download_method_rejected(self) -> None:
        """Unknown download methods should fail validation."""
        with pytest.raises(ValidationError):
            Settings(download_methods=["carrier-pigeon"])

    def test_settings_are_immutable(self) -> None:
        """Settings should not be modifiable after creation."""
        settings = Settings()
        with pytest.raises(ValidationError):
            settings.log_level = "ERROR"  # type: ignore[misc]


class TestGetSettings:
    """Test get_settings function."""

    def test_returns_settings_instance(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_output_is_valid_json(self, tmp_path: Path) -> None:
        """Output should be valid JSON with every setting."""
        data = json.loads(print_settings_json(Settings(work_dir=tmp_path)))
        assert data["work_dir"] == str(tmp_path)
        assert "cache_dir" in data
        assert "download_methods" in data
