from __future__ import annotations

import numpy as np

from loadout_ocr.models import AbsoluteRegion, RegionSpec


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def resolve(spec: RegionSpec, image_width: int, image_height: int) -> AbsoluteRegion:
    """Convert a fractional region into a pixel rectangle inside the image.

    Coordinates are rounded, then clamped so the rectangle always lies inside
    the image and is at least 1x1. Out-of-range specs are clamped, never
    rejected.

    Args:
      spec: Fractional region spec.
      image_width: Image width in pixels.
      image_height: Image height in pixels.

    Returns:
      The AbsoluteRegion for this image.
    """
    max_x = max(image_width - 1, 0)
    max_y = max(image_height - 1, 0)
    x = _clamp(round(spec.x * image_width), 0, max_x)
    y = _clamp(round(spec.y * image_height), 0, max_y)
    w = _clamp(round(spec.w * image_width), 1, max(image_width - x, 1))
    h = _clamp(round(spec.h * image_height), 1, max(image_height - y, 1))
    return AbsoluteRegion(name=spec.name, x=x, y=y, w=w, h=h)


def crop(image: np.ndarray, region: AbsoluteRegion) -> np.ndarray:
    """Copy the pixels covered by a resolved region."""
    return image[region.y : region.y + region.h, region.x : region.x + region.w].copy()
