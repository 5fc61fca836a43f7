"""Edition name to image index resolution.

An install payload holds several images (Home, Pro, Education, ...). When a
build names an edition instead of an index, the index is resolved here. An
ambiguous name is never guessed: the candidates are surfaced so the caller
can pick one.
"""

import logging
from collections.abc import Sequence

from imageforge.errors import StructuralError
from imageforge.providers import ImageInfo

logger = logging.getLogger(__name__)


class NoMatchingImageError(StructuralError):
    """Raised when no image in the payload matches the requested edition."""

    def __init__(
        self,
        edition: str,
        available: Sequence[ImageInfo],
        code: str = "no_matching_image",
    ) -> None:
        names = ", ".join(f"{img.index}: {img.name}" for img in available) or "none"
        super().__init__(f"No image matches edition '{edition}' (available: {names})", code)
        self.edition = edition
        self.available = list(available)


class AmbiguousEditionError(StructuralError):
    """Raised when several images match and none can be preferred."""

    def __init__(
        self,
        edition: str,
        candidates: Sequence[ImageInfo],
        code: str = "ambiguous_edition",
    ) -> None:
        names = ", ".join(f"{img.index}: {img.name}" for img in candidates)
        super().__init__(
            f"Edition '{edition}' is ambiguous; set image_index to one of: {names}",
            code,
        )
        self.edition = edition
        self.candidates = list(candidates)


def _norm(value: str) -> str:
    return " ".join(value.lower().split())


def resolve_image_index(
    images: Sequence[ImageInfo],
    edition: str,
    release_hint: str | None = None,
) -> int:
    """Resolve an edition name to an image index.

    Resolution order:

    1. Exact (case- and whitespace-insensitive) name match.
    2. Images whose name contains the edition, narrowed to those whose
       name or description also contains ``release_hint``.

    Args:
        images: Images listed from the install payload.
        edition: Requested edition name.
        release_hint: Release string used to narrow substring matches.

    Returns:
        The 1-based image index.

    Raises:
        NoMatchingImageError: If nothing matches.
        AmbiguousEditionError: If several images remain.
    """
    wanted = _norm(edition)
    if not wanted:
        raise NoMatchingImageError(edition, images)

    exact = [img for img in images if _norm(img.name) == wanted]
    if len(exact) == 1:
        logger.info("Edition '%s' matched image %d exactly", edition, exact[0].index)
        return exact[0].index
    if len(exact) > 1:
        raise AmbiguousEditionError(edition, exact)

    candidates = [img for img in images if wanted in _norm(img.name)]
    if release_hint and len(candidates) > 1:
        hint = _norm(release_hint)
        narrowed = [
            img
            for img in candidates
            if hint in _norm(img.name) or hint in _norm(img.description)
        ]
        if narrowed:
            candidates = narrowed

    if not candidates:
        raise NoMatchingImageError(edition, images)
    if len(candidates) > 1:
        raise AmbiguousEditionError(edition, candidates)

    logger.info(
        "Edition '%s' resolved to image %d (%s)",
        edition,
        candidates[0].index,
        candidates[0].name,
    )
    return candidates[0].index


__all__ = ["AmbiguousEditionError", "NoMatchingImageError", "resolve_image_index"]
