"""
Bounding box shapes.

Two shapes are found in stored data and in client payloads:

* flat:   {"x", "y", "width", "height"}
* legacy: {"topLeft": {"x", "y"}, "bottomRight": {"x", "y"}, "width", "height"}

All coordinates are normalized to the 0-1 image frame. Everything that reads
a box goes through normalize_bounding_box(); everything that writes one
stores BoundingBox.model_dump(). to_legacy_shape() serves consumers that
still expect the nested corners.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


# Slack for float error when corners are converted to a size
EDGE_TOLERANCE = 1e-6


class Point(BaseModel):
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)


class BoundingBox(BaseModel):
    """Canonical flat box: top-left corner plus size, wholly inside the frame."""
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    width: float = Field(ge=0.0, le=1.0)
    height: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _inside_frame(self) -> "BoundingBox":
        if self.x + self.width > 1.0 + EDGE_TOLERANCE:
            raise ValueError("box extends past the right edge (x + width > 1)")
        if self.y + self.height > 1.0 + EDGE_TOLERANCE:
            raise ValueError("box extends past the bottom edge (y + height > 1)")
        return self

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)


class LegacyBoundingBox(BaseModel):
    """Nested-corner box used by older rows and the canvas layer."""
    topLeft: Point
    bottomRight: Point
    width: Optional[float] = None
    height: Optional[float] = None

    @model_validator(mode="after")
    def _corners_ordered(self) -> "LegacyBoundingBox":
        if self.bottomRight.x < self.topLeft.x or self.bottomRight.y < self.topLeft.y:
            raise ValueError("bottomRight must not be above or left of topLeft")
        return self


def normalize_bounding_box(raw: Any) -> BoundingBox:
    """
    Convert any observed box shape into the canonical flat BoundingBox.
    Raises ValueError (or pydantic.ValidationError) for anything else.
    """
    if isinstance(raw, BoundingBox):
        return raw
    if isinstance(raw, LegacyBoundingBox):
        legacy = raw
    elif isinstance(raw, dict) and "topLeft" in raw:
        legacy = LegacyBoundingBox.model_validate(raw)
    elif isinstance(raw, dict):
        return BoundingBox.model_validate(raw)
    else:
        raise ValueError(f"Unsupported bounding box value: {type(raw).__name__}")

    return BoundingBox(
        x=legacy.topLeft.x,
        y=legacy.topLeft.y,
        width=legacy.bottomRight.x - legacy.topLeft.x,
        height=legacy.bottomRight.y - legacy.topLeft.y,
    )


def to_legacy_shape(box: BoundingBox) -> dict:
    """Render a canonical box in the nested-corner shape."""
    return {
        "topLeft": {"x": box.x, "y": box.y},
        "bottomRight": {"x": min(1.0, box.x + box.width), "y": min(1.0, box.y + box.height)},
        "width": box.width,
        "height": box.height,
    }


def boxes_equal(a: BoundingBox, b: BoundingBox, tolerance: float = 1e-6) -> bool:
    return (
        abs(a.x - b.x) <= tolerance
        and abs(a.y - b.y) <= tolerance
        and abs(a.width - b.width) <= tolerance
        and abs(a.height - b.height) <= tolerance
    )
