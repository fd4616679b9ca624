from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Protocol

import cv2
import numpy as np

from loadout_ocr.config import CLAHE_CLIP_LIMIT, CLAHE_TILE_GRID, OCR_UPSCALE, LanguageCode
from loadout_ocr.errors import EngineNotReadyError
from loadout_ocr.models import AbsoluteRegion
from loadout_ocr.regions import crop

# --- CPU safe flags (MKL/oneDNN off, thread caps), must precede the paddle import ---
os.environ.setdefault("OPENBLAS_CORETYPE", "NEHALEM")
os.environ.setdefault("OPENBLAS_NUM_THREADS", "1")
os.environ.setdefault("OMP_NUM_THREADS", "1")
os.environ.setdefault("MKL_NUM_THREADS", "1")
os.environ.setdefault("FLAGS_use_mkldnn", "0")

logger = logging.getLogger("loadout-ocr.ocr")

PADDLE_WHL_DIR = Path.home() / ".paddleocr" / "whl"

# (detector, recognizer) PP-OCRv3 directories relative to PADDLE_WHL_DIR
V3_MODEL_DIRS: dict[str, tuple[Path, Path]] = {
    "en": (Path("det/en/en_PP-OCRv3_det_infer"), Path("rec/en/en_PP-OCRv3_rec_infer")),
    "ch": (Path("det/ch/ch_PP-OCRv3_det_infer"), Path("rec/ch/ch_PP-OCRv3_rec_infer")),
    "japan": (Path("det/ml/Multilingual_PP-OCRv3_det_infer"), Path("rec/japan/japan_PP-OCRv3_rec_infer")),
    "korean": (Path("det/ml/Multilingual_PP-OCRv3_det_infer"), Path("rec/korean/korean_PP-OCRv3_rec_infer")),
}


class OcrEngine(Protocol):
    def ocr(self, img: np.ndarray, cls: bool = ...) -> Any: ...


class _EngineCall:
    """One engine call on a daemon thread, so a stall never blocks interpreter exit."""

    def __init__(self, engine: OcrEngine, img: np.ndarray, cls: bool) -> None:
        self.engine = engine
        self.result: Any = None
        self.error: BaseException | None = None
        self.thread = threading.Thread(target=self._run, args=(img, cls), name="ocr-call", daemon=True)
        self.thread.start()

    def _run(self, img: np.ndarray, cls: bool) -> None:
        try:
            self.result = self.engine.ocr(img, cls=cls)
        except BaseException as e:
            self.error = e

    def wait(self, timeout_s: float) -> Any:
        self.thread.join(timeout_s)
        if self.thread.is_alive():
            raise TimeoutError(f"OCR call still running after {timeout_s}s")
        if self.error is not None:
            raise self.error
        return self.result


def call_engine(engine: OcrEngine, img: np.ndarray, timeout_s: float | None = None) -> Any:
    """Call ``engine.ocr``; the timeout covers inference only, never lock queueing.

    Raises:
      TimeoutError: If the engine call outlives ``timeout_s``.
    """
    if isinstance(engine, SerializedEngine):
        return engine.ocr(img, cls=False, timeout_s=timeout_s)
    if timeout_s is None:
        return engine.ocr(img, cls=False)
    return _EngineCall(engine, img, cls=False).wait(timeout_s)


class SerializedEngine:
    """Wraps an OCR engine so only one inference runs at a time.

    A Paddle predictor is not safe to call from several threads at once, and
    the HTTP layer runs each request on its own worker thread. The timeout
    starts once this call holds the engine. A call that times out leaves its
    predictor behind: it is rebuilt with ``factory`` when one is given,
    otherwise the next caller waits for the stalled call before using it.
    """

    def __init__(self, engine: OcrEngine, factory: Callable[[], OcrEngine] | None = None) -> None:
        self.engine = engine
        self.factory = factory
        self._lock = threading.Lock()
        self._stalled: _EngineCall | None = None

    def ocr(self, img: np.ndarray, cls: bool = False, timeout_s: float | None = None) -> Any:
        with self._lock:
            self._drain_stalled()
            if timeout_s is None:
                return self.engine.ocr(img, cls=cls)
            call = _EngineCall(self.engine, img, cls)
            try:
                return call.wait(timeout_s)
            except TimeoutError:
                self._discard(call)
                raise

    def _drain_stalled(self) -> None:
        stalled, self._stalled = self._stalled, None
        if stalled is not None and stalled.engine is self.engine and stalled.thread.is_alive():
            logger.info("waiting for a stalled OCR call before reusing its engine")
            stalled.thread.join()

    def _discard(self, call: _EngineCall) -> None:
        self._stalled = call
        if self.factory is None:
            return
        try:
            self.engine = self.factory()
            logger.warning("replaced stalled OCR engine")
        except Exception as e:
            logger.exception(f"❌ Failed to rebuild stalled OCR engine: {e}")


OCR_ENGINES: dict[str, SerializedEngine] = {}


def v3_dirs_for_language_code(language_code: LanguageCode) -> tuple[str | None, str | None]:
    """Return PP-OCRv3 detector/recognizer directories for a given language.

    If a directory is missing, None is returned for that path so PaddleOCR
    downloads the v3 weights on first use.

    Args:
      language_code: Language code ("en", "ch", "korean", or "japan").

    Returns:
      A tuple (det_model_dir, rec_model_dir) of string paths or None.
    """
    dirs = V3_MODEL_DIRS.get(language_code.lower())
    if dirs is None:
        return None, None
    det, rec = (PADDLE_WHL_DIR / d for d in dirs)
    det_dir = str(det) if det.exists() else None
    rec_dir = str(rec) if rec.exists() else None
    logger.info(
        f"[models] {language_code} v3 det_dir={'OK' if det_dir else 'MISS'} "
        f"rec_dir={'OK' if rec_dir else 'MISS'} base={PADDLE_WHL_DIR}"
    )
    return det_dir, rec_dir


def build_ocr_engine(language_code: LanguageCode) -> OcrEngine:
    """Build a PaddleOCR engine configured for PP-OCRv3 on CPU.

    PaddleOCR is imported here so that importing this module never loads
    Paddle; tests and tools can run with an injected engine instead.
    """
    from paddleocr import PaddleOCR  # noqa: PLC0415

    det_dir, rec_dir = v3_dirs_for_language_code(language_code)
    return PaddleOCR(
        ocr_version="PP-OCRv3",
        use_angle_cls=False,
        lang=language_code,
        show_log=False,
        enable_mkldnn=False,
        use_gpu=False,
        det_batch_num=1,
        rec_batch_num=1,
        cls_batch_num=1,
        det_model_dir=det_dir,
        rec_model_dir=rec_dir,
    )


def warm_ocr_engines(languages: tuple[LanguageCode, ...] = ("en",)) -> None:
    """Initialize and cache OCR engines for the given languages.

    Engines are stored in the process-local OCR_ENGINES registry and reused
    across requests. Failures are logged; the language simply stays missing.
    """
    for language_code in languages:
        if language_code in OCR_ENGINES:
            continue
        logger.info(f"📥 Warming PaddleOCR model: {language_code} (PP-OCRv3, MKLDNN OFF)")
        try:
            OCR_ENGINES[language_code] = SerializedEngine(
                build_ocr_engine(language_code),
                factory=lambda language_code=language_code: build_ocr_engine(language_code),
            )
            logger.info(f"✅ Model ready: {language_code}")
        except Exception as e:
            logger.exception(f"❌ Failed to warm {language_code}: {e}")


def get_ocr_engine(language_code: LanguageCode) -> SerializedEngine:
    """Retrieve a warmed engine from the registry.

    Raises:
      EngineNotReadyError: If the engine was not initialized.
    """
    engine = OCR_ENGINES.get(language_code)
    if engine is None:
        raise EngineNotReadyError(language_code)
    return engine


def preprocess_for_ocr(
    image: np.ndarray,
    upscale: float = OCR_UPSCALE,
    clip_limit: float = CLAHE_CLIP_LIMIT,
    tile_grid: int = CLAHE_TILE_GRID,
) -> np.ndarray:
    """Prepare a small HUD crop for recognition.

    Grayscale, CLAHE for local contrast, min-max normalization to the full
    0-255 range, then cubic upscaling.

    Args:
      image: BGR, BGRA or grayscale crop.
      upscale: Resize factor applied last.
      clip_limit: CLAHE clip limit.
      tile_grid: CLAHE tile grid size (both axes).

    Returns:
      A single-channel uint8 image.
    """
    if image.ndim == 3 and image.shape[2] == 4:
        grayscale = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    elif image.ndim == 3:
        grayscale = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    else:
        grayscale = image
    grayscale = grayscale.astype(np.uint8, copy=False)
    grayscale = cv2.createCLAHE(clipLimit=clip_limit, tileGridSize=(tile_grid, tile_grid)).apply(grayscale)
    grayscale = cv2.normalize(grayscale, None, 0, 255, cv2.NORM_MINMAX)
    if upscale != 1.0:
        grayscale = cv2.resize(grayscale, None, fx=upscale, fy=upscale, interpolation=cv2.INTER_CUBIC)
    return grayscale


def _is_line(block: Any) -> bool:
    """True for a single ``[box, (text, confidence)]`` entry."""
    if not isinstance(block, (list, tuple)) or len(block) < 2:
        return False
    info = block[1]
    return isinstance(info, (list, tuple)) and len(info) >= 2 and isinstance(info[0], str)


def ocr_lines(
    image: np.ndarray, engine: OcrEngine | None, timeout_s: float | None = None
) -> list[tuple[str, float]]:
    """Run OCR on an image and return recognized text lines with confidences.

    Handles both BGR and grayscale input and the nested PaddleOCR result
    layout. Engine errors and timeouts are logged and yield an empty list.

    Args:
      image: Input image (BGR or grayscale).
      engine: Object exposing ``ocr(img, cls=False)``.
      timeout_s: Seconds of inference allowed before giving up. None waits.

    Returns:
      A list of (text, confidence) tuples, empty if nothing was recognized.
    """
    if engine is None or image is None or image.size == 0:
        return []
    bgr_image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR) if image.ndim == 2 else image
    try:
        ocr_result = call_engine(engine, bgr_image, timeout_s) or []
    except TimeoutError:
        logger.warning(f"OCR timed out after {timeout_s}s")
        return []
    except Exception as e:
        logger.warning(f"OCR failed: {e}")
        return []
    recognized_lines: list[tuple[str, float]] = []
    # paddle 2.x nests lines per page: [[line, line, ...]]; older releases return [line, ...]
    first = ocr_result[0] if len(ocr_result) > 0 else None
    result_blocks = first if isinstance(first, list) and not _is_line(first) else ocr_result
    for block in result_blocks or []:
        if not block or len(block) < 2:
            continue
        info = block[1]
        if not isinstance(info, (list, tuple)) or len(info) < 2:
            continue
        text = str(info[0] or "").strip()
        try:
            confidence = float(info[1]) if info[1] is not None else -1.0
        except (TypeError, ValueError):
            confidence = -1.0
        if text:
            recognized_lines.append((text, confidence))
    return recognized_lines


def join_lines(lines: list[tuple[str, float]]) -> str:
    """Join recognized text lines into a single space-separated string."""
    return " ".join([t for t, _ in lines]).strip()


def extract_text(
    image: np.ndarray,
    region: AbsoluteRegion,
    engine: OcrEngine | None,
    upscale: float = OCR_UPSCALE,
    clip_limit: float = CLAHE_CLIP_LIMIT,
    tile_grid: int = CLAHE_TILE_GRID,
    timeout_s: float | None = None,
) -> str:
    """Crop a region, preprocess it and return the recognized text.

    OCR problems never escape this function: engine errors and timeouts are
    logged and reported as an empty string.

    Args:
      image: Full decoded screenshot.
      region: Region resolved against this image.
      engine: OCR engine; None yields "".
      upscale: Resize factor for preprocessing.
      clip_limit: CLAHE clip limit.
      tile_grid: CLAHE tile grid size.
      timeout_s: Abandon inference after this many seconds. Time spent
        waiting for a shared engine does not count. None waits.

    Returns:
      Recognized text joined by spaces, possibly empty.
    """
    if engine is None:
        return ""
    try:
        prepared = preprocess_for_ocr(crop(image, region), upscale, clip_limit, tile_grid)
    except cv2.error as e:
        logger.warning(f"OCR preprocessing failed for {region.name}: {e}")
        return ""
    return join_lines(ocr_lines(prepared, engine, timeout_s))
