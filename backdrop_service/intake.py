"""Upload validation. Nothing downstream runs unless this accepts the file."""

from __future__ import annotations

import logging
from typing import Optional

from PIL import Image, UnidentifiedImageError

from . import config
from .errors import InputValidationError
from .imaging import SourceImage, open_image

logger = logging.getLogger(__name__)


def normalize_mime_type(mime_type: Optional[str]) -> str:
    return (mime_type or "").split(";")[0].strip().lower()


def check_declared_upload(
    mime_type: Optional[str],
    size_bytes: Optional[int],
    settings: Optional[config.Settings] = None,
) -> str:
    """
    Reject an upload from its declared type and size, before its body is read.

    Returns the normalized MIME type.
    """
    settings = settings or config.get_settings()
    mime_type = normalize_mime_type(mime_type)
    if mime_type not in settings.accepted_mime_types:
        raise InputValidationError(
            "Please upload an image file (JPEG, PNG, WEBP or GIF)", status_code=415
        )
    if size_bytes is not None and size_bytes > settings.max_upload_bytes:
        limit_mb = settings.max_upload_bytes // (1024 * 1024)
        raise InputValidationError(f"Image size must be less than {limit_mb}MB", status_code=413)
    return mime_type


def validate_upload(
    data: bytes,
    mime_type: str,
    size_bytes: Optional[int] = None,
    filename: Optional[str] = None,
    settings: Optional[config.Settings] = None,
) -> SourceImage:
    """
    Check type, size and decodability of an upload and wrap it as a SourceImage.

    Raises:
        InputValidationError: with status 415 for unsupported types, 413 when
            the file is too large and 400 for empty or undecodable data.
    """
    settings = settings or config.get_settings()
    # Trust whichever is larger so a lying size header cannot sneak past.
    size = max(size_bytes or 0, len(data))
    mime_type = check_declared_upload(mime_type, size, settings)
    if not data:
        raise InputValidationError("Empty image upload")

    try:
        image = open_image(data)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise InputValidationError("Invalid image data") from exc

    logger.debug("intake accepted %s %dx%d (%d bytes)", mime_type, image.width, image.height, size)
    return SourceImage(
        data=data,
        mime_type=mime_type,
        width=image.width,
        height=image.height,
        filename=filename,
    )
