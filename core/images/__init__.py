"""Image helpers shared by the file cache and the variant generator."""

from .processing import (
    ImageValidationError,
    PreparedImage,
    detect_mime_type,
    hash_buffer,
    prepare_image,
    to_jpeg,
    validate_magic_bytes,
)

__all__ = [
    "ImageValidationError",
    "PreparedImage",
    "detect_mime_type",
    "hash_buffer",
    "prepare_image",
    "to_jpeg",
    "validate_magic_bytes",
]
