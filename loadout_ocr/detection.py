from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Protocol

import numpy as np

from loadout_ocr.config import DetectionConfig
from loadout_ocr.fields import parse_field
from loadout_ocr.imaging import decode_image_bytes
from loadout_ocr.models import DetectionRecord, ExtractedField, PresenceResult
from loadout_ocr.ocr import OcrEngine, extract_text
from loadout_ocr.presence import score_presence
from loadout_ocr.regions import resolve

logger = logging.getLogger("loadout-ocr.detection")


class DetectionSink(Protocol):
    """Persistence and fan-out collaborator for finished records.

    ``accept`` returns normally on success and raises on failure.
    """

    def accept(self, record: DetectionRecord) -> None: ...


def mint_detection_id(now: datetime) -> str:
    """Id from epoch milliseconds plus a random suffix for same-millisecond captures."""
    millis = int(now.timestamp() * 1000)
    return f"{millis:013d}-{secrets.randbelow(1_000_000_000):09d}"


class DetectionPipeline:
    """Runs region presence scoring and combat power OCR over one screenshot.

    The pipeline keeps no state between calls; every ``analyze`` uses only its
    arguments, the static config and the injected collaborators.
    """

    def __init__(
        self,
        config: DetectionConfig,
        engine: OcrEngine | None,
        sink: DetectionSink,
        ocr_timeout_s: float | None = None,
    ) -> None:
        self.config = config
        self.engine = engine
        self.sink = sink
        self.ocr_timeout_s = ocr_timeout_s

    def score_regions(self, image: np.ndarray) -> list[PresenceResult]:
        height, width = image.shape[:2]
        return [
            score_presence(image, resolve(spec, width, height), self.config.presence_threshold)
            for spec in self.config.regions
        ]

    def read_combat_power(self, image: np.ndarray) -> ExtractedField:
        height, width = image.shape[:2]
        spec = next(r for r in self.config.regions if r.name == self.config.readout_region)
        region = resolve(spec, width, height)
        raw_text = extract_text(
            image,
            region,
            self.engine,
            upscale=self.config.ocr_upscale,
            clip_limit=self.config.clahe_clip_limit,
            tile_grid=self.config.clahe_tile_grid,
            timeout_s=self.ocr_timeout_s,
        )
        return parse_field(raw_text, self.config.field_rules, region_name=region.name)

    def analyze(
        self,
        image: np.ndarray | bytes,
        image_path: str,
        now: datetime | None = None,
        detection_id: str | None = None,
    ) -> DetectionRecord:
        """Analyze one screenshot and hand the record to the sink.

        Args:
          image: Decoded BGR array, or encoded image bytes.
          image_path: Public path of the stored image, copied into the record.
          now: Capture time; defaults to the current UTC time.
          detection_id: Id for the record, e.g. one already used to name the
            stored image. Minted from ``now`` when omitted.

        Returns:
          The DetectionRecord that was accepted by the sink. A record is
          produced even when nothing was detected.

        Raises:
          ImageDecodeError: If ``image`` is bytes that cannot be decoded.
          Exception: Whatever the sink raises, unchanged.
        """
        if isinstance(image, (bytes, bytearray, memoryview)):
            image = decode_image_bytes(bytes(image))
        now = now or datetime.now(timezone.utc)

        presence = self.score_regions(image)
        combat_power = self.read_combat_power(image)

        record = DetectionRecord(
            id=detection_id or mint_detection_id(now),
            image_path=image_path,
            created_at=now,
            regions={p.region_name: p.visible for p in presence},
            combat_power=combat_power.value,
        )
        scores = {p.region_name: round(p.score, 1) for p in presence}
        logger.debug(f"[detect] {record.id} scores={scores} text={combat_power.raw_text!r}")
        self.sink.accept(record)
        return record
