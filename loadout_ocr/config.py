from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from loadout_ocr.fields import FieldRule
from loadout_ocr.models import RegionSpec

logger = logging.getLogger("loadout-ocr.config")

LanguageCode = Literal["en", "ch", "korean", "japan"]

# ================================ Regions (16:9) ================================
# Fractions are (x, y, w, h), tuned on 1920x1080 captures.
REGION_INVENTORY_PANEL = (0.620, 0.120, 0.340, 0.700)
REGION_EQUIPPED_ITEMS = (0.040, 0.120, 0.300, 0.620)
REGION_COMBAT_POWER = (0.360, 0.040, 0.280, 0.080)

READOUT_REGION = "combat_power"

# Grayscale variance above which a region counts as rendered UI.
PRESENCE_THRESHOLD = 60.0

OCR_UPSCALE = 2.0
CLAHE_CLIP_LIMIT = 3.0
CLAHE_TILE_GRID = 8

RE_COMBAT_POWER_LABELLED = re.compile(r"(?i)combat\s*p[o0]wer\s*[:\-]?\s*(\d[\d,.Oo]*)")
RE_LONGEST_DIGIT_RUN = re.compile(r"\d{1,3}(?:[,.]\d{3})+|\d{3,}")


def default_regions() -> list[RegionSpec]:
    return [
        RegionSpec(name="inventory_panel", x=REGION_INVENTORY_PANEL[0], y=REGION_INVENTORY_PANEL[1],
                   w=REGION_INVENTORY_PANEL[2], h=REGION_INVENTORY_PANEL[3]),
        RegionSpec(name="equipped_items", x=REGION_EQUIPPED_ITEMS[0], y=REGION_EQUIPPED_ITEMS[1],
                   w=REGION_EQUIPPED_ITEMS[2], h=REGION_EQUIPPED_ITEMS[3]),
        RegionSpec(name="combat_power", x=REGION_COMBAT_POWER[0], y=REGION_COMBAT_POWER[1],
                   w=REGION_COMBAT_POWER[2], h=REGION_COMBAT_POWER[3]),
    ]


def default_combat_power_rules() -> list[FieldRule]:
    """Label-anchored match first, then the longest 3+ digit run as fallback.

    OCR often garbles or drops the "Combat Power" label while keeping the
    digits, hence the unanchored fallback.
    """
    return [
        FieldRule(pattern=RE_COMBAT_POWER_LABELLED, group=1),
        FieldRule(pattern=RE_LONGEST_DIGIT_RUN, group=0, pick="longest"),
    ]


class DetectionConfig(BaseModel):
    """Static configuration of the detection pipeline.

    Attributes:
      regions: Ordered region specs; every one gets a presence verdict.
      readout_region: Name of the region that is also OCR'd for combat power.
      presence_threshold: Variance threshold on the 0-255 grayscale scale.
      field_rules: Ordered rules used to parse the readout text.
      ocr_upscale: Upscaling factor applied before OCR.
      clahe_clip_limit: CLAHE clip limit used in OCR preprocessing.
      clahe_tile_grid: CLAHE tile grid size used in OCR preprocessing.
    """

    model_config = ConfigDict(frozen=True)

    regions: list[RegionSpec] = Field(default_factory=default_regions)
    readout_region: str = READOUT_REGION
    presence_threshold: float = PRESENCE_THRESHOLD
    field_rules: list[FieldRule] = Field(default_factory=default_combat_power_rules)
    ocr_upscale: float = Field(default=OCR_UPSCALE, gt=0)
    clahe_clip_limit: float = Field(default=CLAHE_CLIP_LIMIT, gt=0)
    clahe_tile_grid: int = Field(default=CLAHE_TILE_GRID, ge=1)

    @model_validator(mode="after")
    def _check_regions(self) -> DetectionConfig:
        names = [r.name for r in self.regions]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate region names: {names}")
        if self.readout_region not in names:
            raise ValueError(f"readout_region '{self.readout_region}' is not a configured region")
        return self


def load_detection_config(path: str | Path | None = None) -> DetectionConfig:
    """Load the pipeline configuration from a JSON file, or the defaults.

    Args:
      path: JSON file matching the DetectionConfig schema. Missing keys fall
        back to the defaults. None returns the defaults.

    Returns:
      A validated DetectionConfig.

    Raises:
      OSError: If the file cannot be read.
      pydantic.ValidationError: If the file does not match the schema.
    """
    if path is None:
        return DetectionConfig()
    raw = Path(path).read_text(encoding="utf-8")
    config = DetectionConfig.model_validate_json(raw)
    logger.info(f"[config] loaded {len(config.regions)} regions from {path}")
    return config


class ServiceSettings(BaseModel):
    """Process-level settings for the HTTP service."""

    model_config = ConfigDict(frozen=True)

    data_dir: Path = Path("data")
    upload_dir: Path = Path("public") / "uploads"
    detections_file: Path | None = None
    config_path: Path | None = None
    ocr_language: LanguageCode = "en"
    ocr_timeout_s: float | None = 15.0
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @property
    def detections_path(self) -> Path:
        return self.detections_file or self.data_dir / "detections.jsonl"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> ServiceSettings:
        """Build settings from LOADOUT_* and server environment variables."""
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        mapping = {
            "LOADOUT_DATA_DIR": "data_dir",
            "LOADOUT_UPLOAD_DIR": "upload_dir",
            "LOADOUT_DETECTIONS_FILE": "detections_file",
            "LOADOUT_CONFIG": "config_path",
            "LOADOUT_OCR_LANG": "ocr_language",
            "HOST": "host",
            "PORT": "port",
            "LOG_LEVEL": "log_level",
        }
        for var, field in mapping.items():
            if env.get(var):
                values[field] = env[var]
        timeout = env.get("LOADOUT_OCR_TIMEOUT")
        if timeout is not None:
            # "0" or "" disables the timeout
            values["ocr_timeout_s"] = float(timeout) if timeout and float(timeout) > 0 else None
        return cls.model_validate(values)
