from __future__ import annotations

import base64
import binascii
import io
import re

import cv2
import numpy as np
from PIL import Image, ImageFile

from loadout_ocr.errors import ImageDecodeError

ImageFile.LOAD_TRUNCATED_IMAGES = True

RE_SPACES = re.compile(r"\s+")

PIL_FORMAT_EXTENSIONS = {
    "PNG": ".png",
    "JPEG": ".jpg",
    "WEBP": ".webp",
    "BMP": ".bmp",
    "GIF": ".gif",
    "TIFF": ".tif",
}


def normalize_base64_padding(b64_string: str) -> str:
    """Normalize a base64 string by fixing URL-safe characters and padding.

    Removes whitespace, converts URL-safe base64 to standard, and appends the
    required '=' padding to make the length a multiple of 4.
    """
    cleaned = re.sub(RE_SPACES, "", b64_string).replace("-", "+").replace("_", "/")
    missing = (-len(cleaned)) % 4
    return cleaned + ("=" * missing if missing else "")


def decode_base64_image(image_b64: str) -> bytes:
    """Decode a base64 (or data URL) image payload into raw bytes.

    Args:
      image_b64: Base64-encoded image string. May be a data URL or raw base64.

    Returns:
      The encoded image bytes.

    Raises:
      ImageDecodeError: For a missing payload or invalid base64.
    """
    if not image_b64:
        raise ImageDecodeError("image_b64 is required")
    if image_b64.startswith("data:"):
        image_b64 = image_b64.split(",", 1)[-1]
    try:
        return base64.b64decode(normalize_base64_padding(image_b64), validate=False)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeError(f"invalid base64: {e}") from e


def decode_image_bytes(image_bytes: bytes) -> np.ndarray:
    """Decode encoded image bytes into a BGR numpy array.

    Loads via PIL (tolerating truncated files), converts to RGB, and returns an
    OpenCV-compatible BGR image.

    Raises:
      ImageDecodeError: If the buffer is empty or not a readable image.
    """
    if not image_bytes:
        raise ImageDecodeError("empty image buffer")
    try:
        pil_image = Image.open(io.BytesIO(image_bytes))
        pil_image.load()
        pil_image = pil_image.convert("RGB")
    except Exception as e:
        raise ImageDecodeError(f"invalid image stream: {e}") from e
    return cv2.cvtColor(np.array(pil_image), cv2.COLOR_RGB2BGR)


def guess_extension(image_bytes: bytes, default: str = ".png") -> str:
    """File extension matching the encoded format, or default if unknown."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as pil_image:
            return PIL_FORMAT_EXTENSIONS.get(pil_image.format or "", default)
    except Exception:
        return default
