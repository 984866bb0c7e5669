"""Decoding and verification of bet slip photos submitted as base64.

Ambassadors send either a bare base64 string or a ``data:<mime>;base64,<payload>``
URL. The payload is verified with Pillow before anything is stored, so a
corrupt upload fails the submission instead of a later extraction attempt.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

SUPPORTED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp"}

_PIL_FORMAT_TO_CONTENT_TYPE = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}

# Width or height below this is too small to read a bet slip from.
MIN_DIMENSION = 32


class ImageValidationError(ValueError):
    pass


@dataclass
class DecodedImage:
    content: bytes
    content_type: str
    width: int
    height: int


def _split_data_url(raw: str) -> tuple[Optional[str], str]:
    if not raw.startswith("data:"):
        return None, raw
    header, sep, payload = raw.partition(",")
    if not sep or ";base64" not in header:
        raise ImageValidationError("Bet slip data URL must be base64 encoded")
    mime = header[len("data:"):].split(";", 1)[0].strip().lower()
    return mime or None, payload


def _normalize_content_type(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip().lower()
    if value == "image/jpg":
        return "image/jpeg"
    return value


def decode_bet_slip_image(
    raw: str,
    *,
    declared_content_type: Optional[str] = None,
    max_bytes: int,
) -> DecodedImage:
    """Decode and verify a submitted bet slip photo.

    The content type is taken from the image bytes themselves; a declared type
    (form field or data URL header) that disagrees with the bytes is rejected.
    """
    raw = (raw or "").strip()
    if not raw:
        raise ImageValidationError("Bet slip photo is empty")

    url_type, payload = _split_data_url(raw)
    declared = _normalize_content_type(declared_content_type) or _normalize_content_type(url_type)
    if declared and declared not in SUPPORTED_CONTENT_TYPES:
        raise ImageValidationError(f"Unsupported bet slip content type: {declared}")

    try:
        content = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageValidationError("Bet slip photo is not valid base64") from exc

    if not content:
        raise ImageValidationError("Bet slip photo is empty")
    if len(content) > max_bytes:
        raise ImageValidationError(f"Bet slip photo exceeds {max_bytes} bytes")

    try:
        with Image.open(io.BytesIO(content)) as img:
            img.verify()
        # verify() leaves the image unusable; reopen to read size and format.
        with Image.open(io.BytesIO(content)) as img:
            fmt = (img.format or "").upper()
            width, height = img.size
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ImageValidationError("Bet slip photo could not be decoded") from exc

    detected = _PIL_FORMAT_TO_CONTENT_TYPE.get(fmt)
    if detected is None:
        raise ImageValidationError(f"Unsupported bet slip image format: {fmt or 'unknown'}")
    if declared and declared != detected:
        raise ImageValidationError(f"Bet slip content type {declared} does not match image data ({detected})")
    if width < MIN_DIMENSION or height < MIN_DIMENSION:
        raise ImageValidationError(f"Bet slip photo is too small ({width}x{height})")

    logger.debug("Decoded bet slip image: type=%s size=%dx%d bytes=%d", detected, width, height, len(content))
    return DecodedImage(content=content, content_type=detected, width=width, height=height)
