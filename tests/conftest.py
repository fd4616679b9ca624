from __future__ import annotations

import threading
import time

import cv2
import numpy as np
import pytest

from loadout_ocr.config import DetectionConfig
from loadout_ocr.models import DetectionRecord, RegionSpec
from loadout_ocr.regions import resolve


class FakeEngine:
    """Stands in for PaddleOCR; returns one fixed line in Paddle's nested layout."""

    def __init__(self, text: str = "Combat Power: 123,456", confidence: float = 0.97) -> None:
        self.text = text
        self.confidence = confidence
        self.calls: list[tuple[int, ...]] = []

    def ocr(self, img, cls=False):
        self.calls.append(img.shape)
        if not self.text:
            return [None]
        box = [[0, 0], [10, 0], [10, 10], [0, 10]]
        return [[[box, (self.text, self.confidence)]]]


class BrokenEngine:
    def ocr(self, img, cls=False):
        raise RuntimeError("predictor exploded")


class SlowEngine:
    def __init__(self, delay: float) -> None:
        self.delay = delay

    def ocr(self, img, cls=False):
        time.sleep(self.delay)
        return [[[[[0, 0]], ("Combat Power 999", 0.9)]]]


class GatedEngine:
    """Blocks inside ``ocr`` until ``release`` is called."""

    def __init__(self, text: str = "Combat Power 999") -> None:
        self.text = text
        self.gate = threading.Event()
        self.entered = threading.Event()

    def release(self) -> None:
        self.gate.set()

    def ocr(self, img, cls=False):
        self.entered.set()
        self.gate.wait()
        return [[[[[0, 0]], (self.text, 0.9)]]]


class ListSink:
    def __init__(self) -> None:
        self.records: list[DetectionRecord] = []

    def accept(self, record: DetectionRecord) -> None:
        self.records.append(record)


def checkerboard(height: int, width: int, block: int = 4) -> np.ndarray:
    rows, cols = np.indices((height, width))
    board = (((rows // block) + (cols // block)) % 2 * 255).astype(np.uint8)
    return cv2.cvtColor(board, cv2.COLOR_GRAY2BGR)


def blank_image(width: int = 320, height: int = 180, color=(40, 40, 40)) -> np.ndarray:
    return np.full((height, width, 3), color, dtype=np.uint8)


def paint_region(image: np.ndarray, spec: RegionSpec) -> None:
    height, width = image.shape[:2]
    region = resolve(spec, width, height)
    image[region.y : region.y + region.h, region.x : region.x + region.w] = checkerboard(region.h, region.w)


def encode_png(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def detection_config() -> DetectionConfig:
    return DetectionConfig()


@pytest.fixture
def screenshot(detection_config: DetectionConfig) -> np.ndarray:
    """Inventory panel and combat power rendered, equipped items blank."""
    image = blank_image()
    for spec in detection_config.regions:
        if spec.name in ("inventory_panel", "combat_power"):
            paint_region(image, spec)
    return image


@pytest.fixture
def sink() -> ListSink:
    return ListSink()
