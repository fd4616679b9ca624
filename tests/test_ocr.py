"""Tests for OCR preprocessing, text extraction and the engine registry."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
from conftest import BrokenEngine, FakeEngine, GatedEngine, SlowEngine, checkerboard

from loadout_ocr import ocr
from loadout_ocr.errors import EngineNotReadyError
from loadout_ocr.models import AbsoluteRegion


def region_of(height: int, width: int) -> AbsoluteRegion:
    return AbsoluteRegion(name="combat_power", x=0, y=0, w=width, h=height)


def test_preprocess_returns_upscaled_grayscale():
    prepared = ocr.preprocess_for_ocr(checkerboard(10, 20), upscale=2.0)

    assert prepared.shape == (20, 40)
    assert prepared.dtype == np.uint8
    assert prepared.min() == 0 and prepared.max() == 255


def test_preprocess_without_upscale_keeps_size():
    assert ocr.preprocess_for_ocr(checkerboard(12, 30), upscale=1.0).shape == (12, 30)


def test_extract_text_runs_engine_on_preprocessed_crop():
    engine = FakeEngine("Combat Power 42 000")
    image = checkerboard(40, 80)

    text = ocr.extract_text(image, AbsoluteRegion(name="combat_power", x=10, y=5, w=30, h=12), engine)

    assert text == "Combat Power 42 000"
    assert engine.calls == [(24, 60, 3)]


def test_extract_text_swallows_engine_errors():
    assert ocr.extract_text(checkerboard(10, 10), region_of(10, 10), BrokenEngine()) == ""


def test_extract_text_without_engine_is_empty():
    assert ocr.extract_text(checkerboard(10, 10), region_of(10, 10), None) == ""


def test_extract_text_gives_up_after_timeout():
    started = time.monotonic()

    text = ocr.extract_text(checkerboard(10, 10), region_of(10, 10), SlowEngine(1.0), timeout_s=0.05)

    assert text == ""
    assert time.monotonic() - started < 0.9


def test_extract_text_within_timeout_returns_text():
    text = ocr.extract_text(checkerboard(10, 10), region_of(10, 10), FakeEngine("CP 100"), timeout_s=5.0)

    assert text == "CP 100"


class RawEngine:
    def __init__(self, result):
        self.result = result

    def ocr(self, img, cls=False):
        return self.result


@pytest.mark.parametrize(
    "result,expected",
    [
        ([[[[0, 0]], ("Combat", 0.9)], [[[0, 0]], ("Power 7", None)]], [("Combat", 0.9), ("Power 7", -1.0)]),
        ([[[[[0, 0]], ("123", "0.5")]]], [("123", 0.5)]),
        ([[None, [[0, 0]], [[[0, 0]], ("  ", 0.9)], [[[0, 0]], "bad"]]], []),
        ([None], []),
        (None, []),
    ],
)
def test_ocr_lines_handles_paddle_layouts(result, expected):
    assert ocr.ocr_lines(checkerboard(4, 4), RawEngine(result)) == expected


def test_join_lines():
    assert ocr.join_lines([("Combat", 0.9), ("Power", 0.8)]) == "Combat Power"
    assert ocr.join_lines([]) == ""


def test_serialized_engine_forwards_calls():
    inner = FakeEngine("x")
    engine = ocr.SerializedEngine(inner)

    assert ocr.ocr_lines(checkerboard(4, 4), engine) == [("x", 0.97)]
    assert len(inner.calls) == 1


def test_serialized_engine_timeout_excludes_queue_time():
    engine = ocr.SerializedEngine(SlowEngine(0.2))
    image = checkerboard(4, 4)

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(lambda _: ocr.ocr_lines(image, engine, timeout_s=1.0), range(6)))

    assert results == [[("Combat Power 999", 0.9)]] * 6


def test_stalled_engine_is_left_behind_when_swapped():
    stalled = GatedEngine()
    engine = ocr.SerializedEngine(stalled)
    image = checkerboard(4, 4)
    try:
        assert ocr.ocr_lines(image, engine, timeout_s=0.1) == []

        engine.engine = FakeEngine("CP 7")

        assert ocr.ocr_lines(image, engine, timeout_s=1.0) == [("CP 7", 0.97)]
    finally:
        stalled.release()


def test_stalled_engine_is_rebuilt_by_factory():
    stalled = GatedEngine()
    engine = ocr.SerializedEngine(stalled, factory=lambda: FakeEngine("CP 8"))
    image = checkerboard(4, 4)
    try:
        assert ocr.ocr_lines(image, engine, timeout_s=0.1) == []

        assert isinstance(engine.engine, FakeEngine)
        assert ocr.ocr_lines(image, engine, timeout_s=1.0) == [("CP 8", 0.97)]
        leftover = [t for t in threading.enumerate() if t.name == "ocr-call"]
        assert leftover and all(t.daemon for t in leftover)
    finally:
        stalled.release()


def test_stalled_engine_without_factory_is_reused_once_it_finishes():
    stalled = GatedEngine()
    engine = ocr.SerializedEngine(stalled)
    image = checkerboard(4, 4)
    assert ocr.ocr_lines(image, engine, timeout_s=0.1) == []

    timer = threading.Timer(0.3, stalled.release)
    timer.start()
    try:
        assert ocr.ocr_lines(image, engine, timeout_s=0.2) == [("Combat Power 999", 0.9)]
    finally:
        timer.cancel()
        stalled.release()


def test_failed_rebuild_keeps_current_engine():
    stalled = GatedEngine()

    def broken_factory():
        raise RuntimeError("no weights")

    engine = ocr.SerializedEngine(stalled, factory=broken_factory)
    try:
        assert ocr.ocr_lines(checkerboard(4, 4), engine, timeout_s=0.1) == []
        assert engine.engine is stalled
    finally:
        stalled.release()


def test_get_ocr_engine_raises_when_not_warmed(monkeypatch):
    monkeypatch.setattr(ocr, "OCR_ENGINES", {})

    with pytest.raises(EngineNotReadyError):
        ocr.get_ocr_engine("en")


def test_warm_ocr_engines_registers_and_tolerates_failures(monkeypatch):
    registry = {}
    monkeypatch.setattr(ocr, "OCR_ENGINES", registry)

    def fake_build(language_code):
        if language_code == "korean":
            raise RuntimeError("no weights")
        return FakeEngine(language_code)

    monkeypatch.setattr(ocr, "build_ocr_engine", fake_build)

    ocr.warm_ocr_engines(("en", "korean"))

    assert set(registry) == {"en"}
    assert isinstance(ocr.get_ocr_engine("en"), ocr.SerializedEngine)
    assert ocr.get_ocr_engine("en").factory().text == "en"


def test_v3_dirs_resolve_only_existing_directories(monkeypatch, tmp_path):
    monkeypatch.setattr(ocr, "PADDLE_WHL_DIR", tmp_path)
    (tmp_path / "det" / "en" / "en_PP-OCRv3_det_infer").mkdir(parents=True)

    det_dir, rec_dir = ocr.v3_dirs_for_language_code("en")

    assert det_dir == str(tmp_path / "det" / "en" / "en_PP-OCRv3_det_infer")
    assert rec_dir is None
    assert ocr.v3_dirs_for_language_code("klingon") == (None, None)
