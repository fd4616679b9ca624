from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


def to_camel(s: str) -> str:
    """Convert a string to camel case."""
    parts = s.split("_")
    return parts[0] + "".join(p.title() for p in parts[1:])


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class RegionSpec(FrozenModel):
    """A named UI zone expressed as fractions of the image width and height.

    Attributes:
      name: Semantic name of the region (e.g. "inventory_panel").
      x: Left edge as a fraction of the image width.
      y: Top edge as a fraction of the image height.
      w: Width as a fraction of the image width.
      h: Height as a fraction of the image height.
    """

    name: str
    x: float
    y: float
    w: float
    h: float


class AbsoluteRegion(FrozenModel):
    """A region in pixel units, valid only for the image it was resolved against."""

    name: str
    x: int
    y: int
    w: int
    h: int

    @property
    def area(self) -> int:
        return self.w * self.h


class PresenceResult(FrozenModel):
    region_name: str
    visible: bool
    score: float


class ExtractedField(FrozenModel):
    region_name: str
    raw_text: str
    value: str | None = None


class DetectionRecord(CamelModel):
    """The persisted result of analyzing one screenshot.

    Attributes:
      id: Unique id, epoch milliseconds plus a random suffix.
      image_path: Public path of the analyzed image.
      created_at: Capture time the id was minted from.
      regions: Visibility of every configured region, keyed by region name.
      combat_power: Digits read from the combat power readout, or None.
    """

    id: str
    image_path: str
    created_at: datetime
    regions: dict[str, bool]
    combat_power: str | None = None
