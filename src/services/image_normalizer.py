"""Image normalization before preview and extraction.

HEIC/HEIF photos straight off a phone cannot be read by the extraction
service or by browsers, so they are decoded and re-encoded as JPEG. Every
other supported format passes through byte-for-byte after a decode check.
"""

import base64
import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from src.errors import ImageDecodeError
from src.services.storage import MIME_EXTENSIONS, mime_type_for

logger = logging.getLogger(__name__)

register_heif_opener()

HEIC_MIME_TYPES = frozenset({"image/heic", "image/heif"})
HEIC_EXTENSIONS = frozenset({".heic", ".heif"})
CONVERSION_QUALITY = 90
PREVIEW_QUALITY = 80


@dataclass
class NormalizedImage:
    """Canonical image bytes ready for extraction."""

    data: bytes
    mime_type: str
    extension: str
    converted: bool = False


def is_heic(mime_type: str | None = None, filename: str | None = None) -> bool:
    """Check whether an upload is HEIC/HEIF by MIME type or extension."""
    if mime_type and mime_type.lower() in HEIC_MIME_TYPES:
        return True
    return bool(filename) and Path(filename).suffix.lower() in HEIC_EXTENSIONS


def _encode_jpeg(data: bytes, quality: int) -> bytes:
    try:
        with Image.open(BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img).convert("RGB")
            out = BytesIO()
            img.save(out, format="JPEG", quality=quality)
            return out.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageDecodeError(f"Failed to decode image: {e}") from e


def _verify(data: bytes) -> None:
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageDecodeError(f"Failed to decode image: {e}") from e


def normalize_image(
    data: bytes, mime_type: str | None = None, filename: str | None = None
) -> NormalizedImage:
    """Produce canonical bytes and MIME type for an uploaded image.

    Raises:
        ImageDecodeError: if the bytes are empty or cannot be decoded.
    """
    if not data:
        raise ImageDecodeError("Image is empty")

    if is_heic(mime_type, filename):
        jpeg = _encode_jpeg(data, CONVERSION_QUALITY)
        logger.info(f"Converted HEIC image ({len(data)} bytes) to JPEG ({len(jpeg)} bytes)")
        return NormalizedImage(data=jpeg, mime_type="image/jpeg", extension="jpg", converted=True)

    _verify(data)
    resolved = mime_type or (mime_type_for(filename) if filename else None) or "image/jpeg"
    return NormalizedImage(
        data=data,
        mime_type=resolved,
        extension=MIME_EXTENSIONS.get(resolved, "jpg"),
    )


def create_preview(data: bytes, mime_type: str | None = None, filename: str | None = None) -> str:
    """Render an upload as a ``data:image/jpeg;base64,...`` URL."""
    if not data:
        raise ImageDecodeError("Image is empty")
    jpeg = _encode_jpeg(data, PREVIEW_QUALITY)
    return f"data:image/jpeg;base64,{base64.b64encode(jpeg).decode('ascii')}"
