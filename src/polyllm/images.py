"""Image attachment helpers and the image normalizer collaborator."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from polyllm.errors import ValidationError
from polyllm.types import File

SUPPORTED_IMAGE_MIME_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})
MAX_IMAGE_DIMENSION = 1024

_HEIC_EXTENSIONS = {"heic", "heif", "heics"}
_HEIC_MIME_TYPES = {"image/heic", "image/heif", "image/heic-sequence"}


@runtime_checkable
class ImageNormalizer(Protocol):
    """Re-encodes an image for provider upload.

    Given a remote URL or inline base64 data plus its declared mime type,
    returns base64 PNG data that fits within
    ``MAX_IMAGE_DIMENSION`` x ``MAX_IMAGE_DIMENSION`` without enlargement.
    Decoding camera-native formats such as HEIC is the normalizer's job.
    """

    async def normalize(self, source: str, mime_type: str, *, is_url: bool) -> str: ...


def validate_image_mime_type(mime_type: str) -> str:
    mime = mime_type.lower()
    if mime not in SUPPORTED_IMAGE_MIME_TYPES:
        raise ValidationError(
            f"Unsupported image mime type {mime_type!r}; expected one of "
            f"{', '.join(sorted(SUPPORTED_IMAGE_MIME_TYPES))}"
        )
    return mime


def is_heic_image(name: str = "", mime: str | None = None) -> bool:
    extension = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    return extension in _HEIC_EXTENSIONS or (mime or "").lower() in _HEIC_MIME_TYPES


async def normalize_to_png(normalizer: ImageNormalizer | None, file: File) -> str:
    """Return base64 PNG data for ``file`` via ``normalizer``."""
    if normalizer is None:
        raise ValidationError("An image normalizer is required to attach images for this provider")
    if file.url is not None:
        return await normalizer.normalize(file.url, file.mime_type, is_url=True)
    return await normalizer.normalize(file.data or "", file.mime_type, is_url=False)
