"""
Image upload processing: validation, optional crop, downscale, re-encode.
"""

from __future__ import annotations

import io
import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from config.settings import config

logger = logging.getLogger(__name__)

ALLOWED_FORMATS = {"JPEG", "PNG", "GIF", "WEBP"}
_CONTENT_TYPES = {"JPEG": "image/jpeg", "PNG": "image/png", "GIF": "image/gif", "WEBP": "image/webp"}
_EXTENSIONS = {"JPEG": "jpg", "PNG": "png", "GIF": "gif", "WEBP": "webp"}


@dataclass
class ProcessedImage:
    data: bytes
    content_type: str
    extension: str
    width: int
    height: int


def process_image_upload(
    data: bytes,
    *,
    crop: Optional[Tuple[int, int, int, int]] = None,
    max_size: int = 1024,
) -> ProcessedImage:
    """
    Validate and normalise an uploaded image.

    ``crop`` is ``(x, y, width, height)`` in source pixels, as produced by the
    client-side cropper.  Raises ``ValueError`` for oversized, unreadable or
    unsupported images and for crops outside the image.
    """
    if not data:
        raise ValueError("Image is empty")
    if len(data) > config.max_upload_bytes:
        raise ValueError(f"Image must be smaller than {config.max_upload_bytes // (1024 * 1024)}MB")

    try:
        image = Image.open(io.BytesIO(data))
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ValueError("File is not a valid image") from exc

    fmt = (image.format or "").upper()
    if fmt not in ALLOWED_FORMATS:
        raise ValueError(f"Unsupported image format: {fmt or 'unknown'}")

    # header dimensions only; decoding happens in load()
    if image.width * image.height > config.max_image_pixels:
        raise ValueError(f"Image is too large ({image.width}x{image.height} pixels)")

    try:
        image.load()
    except (Image.DecompressionBombError, OSError) as exc:
        raise ValueError("File is not a valid image") from exc

    if crop is not None:
        x, y, w, h = crop
        if w <= 0 or h <= 0 or x < 0 or y < 0 or x + w > image.width or y + h > image.height:
            raise ValueError("Crop area is outside the image")
        image = image.crop((x, y, x + w, y + h))

    if max(image.size) > max_size:
        image.thumbnail((max_size, max_size))

    if fmt == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")

    out = io.BytesIO()
    save_kwargs = {"optimize": True}
    if fmt == "JPEG":
        save_kwargs["quality"] = 85
    image.save(out, format=fmt, **save_kwargs)

    return ProcessedImage(
        data=out.getvalue(),
        content_type=_CONTENT_TYPES[fmt],
        extension=_EXTENSIONS[fmt],
        width=image.width,
        height=image.height,
    )


# ── Object keys ─────────────────────────────────────────────────────────


def _name(extension: str) -> str:
    return f"{uuid.uuid4().hex}.{extension}"


def user_image_key(user_id: str, extension: str) -> str:
    return f"users/{user_id}/{_name(extension)}"


def organization_logo_key(organization_id: str, extension: str) -> str:
    return f"orgs/{organization_id}/logo/{_name(extension)}"


def note_image_key(organization_id: str, note_id: str, extension: str) -> str:
    return f"orgs/{organization_id}/notes/{note_id}/{_name(extension)}"


def comment_image_key(organization_id: str, note_id: str, comment_id: str, extension: str) -> str:
    return f"orgs/{organization_id}/notes/{note_id}/comments/{comment_id}/{_name(extension)}"
