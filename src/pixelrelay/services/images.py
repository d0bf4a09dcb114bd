"""Input image decoding and format detection (JPEG, PNG, WebP)."""

import base64
import binascii
import re
from dataclasses import dataclass

from pixelrelay.services.exceptions import ValidationFailed

MAX_IMAGE_BYTES = 10 * 1024 * 1024

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,", re.IGNORECASE)

FORMATS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


@dataclass(frozen=True)
class DecodedImage:
    data: bytes
    content_type: str
    extension: str
    b64: str


def sniff_content_type(data: bytes) -> str | None:
    """Detect a supported image format from magic bytes."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def decode_image(payload: str) -> DecodedImage:
    """Decode a base64 image, with or without a data-URL prefix.

    The declared data-URL type must agree with the magic bytes; payloads that
    are not JPEG, PNG or WebP are rejected.

    Raises:
        ValidationFailed: If the payload is not a supported, decodable image
    """
    if not payload:
        raise ValidationFailed("Image payload is empty")

    declared = None
    match = _DATA_URL_RE.match(payload)
    if match:
        declared = match.group("mime").lower().replace("image/jpg", "image/jpeg")
        payload = payload[match.end():]

    b64 = "".join(payload.split())
    try:
        data = base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationFailed("Image payload is not valid base64") from e

    if len(data) > MAX_IMAGE_BYTES:
        raise ValidationFailed(f"Image exceeds {MAX_IMAGE_BYTES // (1024 * 1024)}MB limit")

    content_type = sniff_content_type(data)
    if content_type is None:
        raise ValidationFailed("Unsupported image format; use JPEG, PNG or WebP")
    if declared is not None and declared != content_type:
        raise ValidationFailed(f"Declared type {declared} does not match image content")

    return DecodedImage(data=data, content_type=content_type, extension=FORMATS[content_type], b64=b64)
