"""
Image re-encoding for batch outputs.

Every item is decoded and re-encoded as a baseline JPEG at a fixed quality.
Inputs with alpha or palette modes are flattened to RGB first because JPEG
has no alpha channel.
"""

from __future__ import annotations

from io import BytesIO

from PIL import Image, UnidentifiedImageError

from .errors import TranscodeError

JPEG_CONTENT_TYPE = "image/jpeg"


def reencode_jpeg(image_bytes: bytes, quality: int = 50) -> bytes:
    """
    Decode arbitrary image bytes and return JPEG bytes at `quality`.

    Raises:
        TranscodeError: when the input is empty or not a decodable image.
    """
    if not image_bytes:
        raise TranscodeError("Empty image data")
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise TranscodeError("Invalid image data") from exc

    if image.mode != "RGB":
        image = image.convert("RGB")

    out = BytesIO()
    image.save(out, format="JPEG", quality=quality)
    return out.getvalue()
