"""Tests for edition name resolution."""

import pytest

from imageforge.providers import ImageInfo
from imageforge.volume.editions import (
    AmbiguousEditionError,
    NoMatchingImageError,
    resolve_image_index,
)

DEFAULT_IMAGES = [
    ImageInfo(1, "Windows 11 Home", "Windows 11 Home edition"),
    ImageInfo(2, "Windows 11 Pro", "Windows 11 Pro edition"),
    ImageInfo(3, "Windows 11 Pro N", "Windows 11 Pro N edition"),
    ImageInfo(4, "Windows 11 Education", "Windows 11 Education edition"),
]


class TestResolveImageIndex:
    """Tests for resolve_image_index."""

    def test_exact_match(self):
        """Exact names win even when they are substrings of other names."""
        assert resolve_image_index(DEFAULT_IMAGES, "Windows 11 Pro") == 2

    def test_exact_match_ignores_case_and_spacing(self):
        """Case and repeated whitespace should not matter."""
        assert resolve_image_index(DEFAULT_IMAGES, "  windows 11   PRO N ") == 3

    def test_unique_substring(self):
        """A unique substring match should resolve."""
        assert resolve_image_index(DEFAULT_IMAGES, "Education") == 4

    def test_ambiguous_substring(self):
        """Several substring matches must not be guessed."""
        with pytest.raises(AmbiguousEditionError) as exc_info:
            resolve_image_index(DEFAULT_IMAGES, "Pro")

        assert exc_info.value.code == "ambiguous_edition"
        assert [img.index for img in exc_info.value.candidates] == [2, 3]
        assert "image_index" in str(exc_info.value)

    def test_release_hint_narrows(self):
        """The release hint should break ties between releases."""
        images = [
            ImageInfo(1, "Windows 10 Pro", "Windows 10 Pro"),
            ImageInfo(2, "Windows 11 Pro", "Windows 11 Pro"),
        ]
        assert resolve_image_index(images, "Pro", release_hint="11") == 2

    def test_hint_without_match_keeps_candidates(self):
        """A hint that matches nothing leaves the ambiguity in place."""
        images = [
            ImageInfo(1, "Server Standard", ""),
            ImageInfo(2, "Server Standard Core", ""),
        ]
        with pytest.raises(AmbiguousEditionError):
            resolve_image_index(images, "Standard", release_hint="2022")

    def test_no_match(self):
        """Unknown editions should list what is available."""
        with pytest.raises(NoMatchingImageError) as exc_info:
            resolve_image_index(DEFAULT_IMAGES, "Enterprise")

        assert exc_info.value.code == "no_matching_image"
        assert "2: Windows 11 Pro" in str(exc_info.value)

    def test_blank_edition(self):
        """An empty edition never matches."""
        with pytest.raises(NoMatchingImageError):
            resolve_image_index(DEFAULT_IMAGES, "   ")
