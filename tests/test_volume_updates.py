"""Tests for update package classification and ordering."""

import logging
from pathlib import Path

import pytest

from imageforge.types import PartialFailure, UpdateKind
from imageforge.volume.updates import (
    UpdatePackage,
    UpdateReport,
    classify_update,
    is_preview,
    order_update_packages,
)


class TestClassifyUpdate:
    """Tests for classify_update."""

    @pytest.mark.parametrize(
        ("filename", "expected"),
        [
            ("windows11.0-kb5031455-x64-ssu.msu", UpdateKind.SERVICING_STACK),
            ("Servicing Stack Update KB5030000.msu", UpdateKind.SERVICING_STACK),
            ("2023-11 Cumulative Update for Windows 11.msu", UpdateKind.CUMULATIVE),
            ("kb5032190-lcu.msu", UpdateKind.CUMULATIVE),
            ("windows11.0-kb5027397-enablement.cab", UpdateKind.FEATURE),
            ("network-driver.cab", UpdateKind.DRIVER),
            ("e1d.inf", UpdateKind.DRIVER),
            ("kb5034441.msu", UpdateKind.OTHER),
        ],
    )
    def test_from_filename(self, filename, expected):
        """Categories should be guessed from the file name."""
        assert classify_update(filename) == expected

    def test_declared_kind_wins(self):
        """A declared category overrides the file name."""
        assert classify_update("kb1-ssu.msu", UpdateKind.CUMULATIVE) == UpdateKind.CUMULATIVE

    def test_is_preview(self):
        """Preview releases are flagged by name."""
        assert is_preview("2023-11 Cumulative Update Preview for Windows 11.msu")
        assert not is_preview("kb5032190.msu")


class TestOrderUpdatePackages:
    """Tests for order_update_packages."""

    def _package(self, identifier, kind, preview=False):
        return UpdatePackage(identifier, Path(f"{identifier}.msu"), kind, preview)

    def test_foundational_first(self):
        """SSU first, cumulative after feature/other, drivers last."""
        packages = [
            self._package("KB1", UpdateKind.CUMULATIVE),
            self._package("KB2", UpdateKind.SERVICING_STACK),
            self._package("KB3", UpdateKind.OTHER),
            self._package("KB4", UpdateKind.DRIVER),
            self._package("KB5", UpdateKind.FEATURE),
        ]

        ordered = order_update_packages(packages)

        assert [p.identifier for p in ordered] == ["KB2", "KB3", "KB5", "KB1", "KB4"]

    def test_preview_warning(self, caplog):
        """Preview packages should be called out in the log."""
        packages = [self._package("KB9", UpdateKind.CUMULATIVE, preview=True)]

        with caplog.at_level(logging.WARNING, logger="imageforge.volume.updates"):
            order_update_packages(packages)

        assert "KB9 is a preview release" in caplog.text


class TestUpdateReport:
    """Tests for UpdateReport."""

    def test_ok_and_applied_ids(self):
        """Failures make the report not ok; applied IDs are a set."""
        report = UpdateReport(applied=["KB1", "KB2"])
        assert report.ok
        assert report.applied_ids == frozenset({"KB1", "KB2"})

        report.failures.append(PartialFailure("apply_updates", "KB3", "0x800f081f"))
        assert not report.ok
