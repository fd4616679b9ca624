from __future__ import annotations

import math

import cv2
import numpy as np

from loadout_ocr.models import AbsoluteRegion, PresenceResult
from loadout_ocr.regions import crop

# Upper bound on pixels scanned per region; larger crops are strided evenly.
PRESENCE_MAX_SAMPLES = 250_000


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Convert a BGR, BGRA or single-channel image to one uint8-compatible channel."""
    if image.ndim == 2:
        return image
    channels = image.shape[2]
    if channels == 1:
        return image[:, :, 0]
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def sample_stride(area: int, max_samples: int = PRESENCE_MAX_SAMPLES) -> int:
    """Smallest per-axis stride that keeps the sample count under max_samples."""
    if area <= max_samples:
        return 1
    return math.ceil(math.sqrt(area / max_samples))


def intensity_variance(gray: np.ndarray) -> float:
    """Population variance of grayscale intensity; 0.0 for one pixel or fewer."""
    if gray.size <= 1:
        return 0.0
    stride = sample_stride(gray.size)
    sample = gray[::stride, ::stride] if stride > 1 else gray
    return float(np.var(sample, dtype=np.float64))


def score_presence(image: np.ndarray, region: AbsoluteRegion, threshold: float) -> PresenceResult:
    """Decide whether a region shows rendered UI rather than flat background.

    Blank or uniformly coloured panels have near-zero variance, while icons,
    text and borders produce strong local contrast.

    Args:
      image: Full decoded screenshot (BGR, BGRA or grayscale).
      region: Region resolved against this image.
      threshold: Variance above which the region is reported visible.

    Returns:
      PresenceResult with the variance as score.
    """
    if region.area <= 1:
        return PresenceResult(region_name=region.name, visible=False, score=0.0)
    variance = intensity_variance(to_grayscale(crop(image, region)))
    return PresenceResult(region_name=region.name, visible=variance > threshold, score=variance)
