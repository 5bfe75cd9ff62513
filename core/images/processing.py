"""Image validation, normalisation and hashing helpers."""

import hashlib
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Optional

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIMENSION = 2048
DEFAULT_JPEG_QUALITY = 90

# (offset, signature) pairs; WEBP also needs "WEBP" at offset 8
MAGIC_BYTES = {
    "image/png": [(0, b"\x89PNG\r\n\x1a\n")],
    "image/jpeg": [(0, b"\xff\xd8\xff")],
    "image/webp": [(0, b"RIFF"), (8, b"WEBP")],
    "image/bmp": [(0, b"BM")],
}


class ImageValidationError(ValueError):
    """Raised when image bytes do not match the declared type."""


@dataclass
class PreparedImage:
    """Normalised image ready for upload."""

    data: bytes
    mime_type: str
    width: int
    height: int

    @property
    def hash(self) -> str:
        """Short content hash of the prepared bytes."""
        return hash_buffer(self.data)


def hash_buffer(data: bytes) -> str:
    """Return the first 16 hex chars of the SHA-256 of a buffer."""
    return hashlib.sha256(data).hexdigest()[:16]


def detect_mime_type(data: bytes) -> Optional[str]:
    """Detect an image MIME type from its leading bytes."""
    for mime_type, signatures in MAGIC_BYTES.items():
        if all(data[offset:offset + len(sig)] == sig for offset, sig in signatures):
            return mime_type
    return None


def validate_magic_bytes(data: bytes, mime_type: str) -> None:
    """
    Check that a buffer really is the image type it claims to be.

    Args:
        data: Image bytes
        mime_type: Declared MIME type

    Raises:
        ImageValidationError: If the buffer is empty, the type is unsupported,
            or the signature does not match
    """
    if not data:
        raise ImageValidationError("Image buffer is empty")

    normalized = "image/jpeg" if mime_type == "image/jpg" else mime_type
    if normalized not in MAGIC_BYTES:
        raise ImageValidationError(f"Unsupported image type: {mime_type}")

    detected = detect_mime_type(data)
    if detected != normalized:
        raise ImageValidationError(
            f"Image content does not match declared type {mime_type} "
            f"(detected {detected or 'unknown'})"
        )


def prepare_image(
    data: bytes,
    output_format: str = "PNG",
    max_dimension: int = DEFAULT_MAX_DIMENSION,
) -> PreparedImage:
    """
    Decode, orient, downscale and re-encode an image.

    Args:
        data: Source image bytes in any Pillow-readable format
        output_format: "PNG" or "JPEG"
        max_dimension: Longest edge after resizing (never upscales)

    Returns:
        PreparedImage with the re-encoded bytes
    """
    with Image.open(BytesIO(data)) as source:
        image = ImageOps.exif_transpose(source)
        image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

        output = BytesIO()
        if output_format.upper() == "JPEG":
            image.convert("RGB").save(output, format="JPEG", quality=DEFAULT_JPEG_QUALITY)
            mime_type = "image/jpeg"
        else:
            if image.mode not in ("RGB", "RGBA"):
                image = image.convert("RGBA")
            image.save(output, format="PNG")
            mime_type = "image/png"

        width, height = image.size

    return PreparedImage(
        data=output.getvalue(),
        mime_type=mime_type,
        width=width,
        height=height,
    )


def to_jpeg(data: bytes, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    """Re-encode any image as an RGB JPEG."""
    with Image.open(BytesIO(data)) as image:
        output = BytesIO()
        image.convert("RGB").save(output, format="JPEG", quality=quality)
    return output.getvalue()
