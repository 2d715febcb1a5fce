"""Prediction types produced by model runners and consumed by the postprocessor.

Bounding boxes use normalized coordinates: ``x``/``y`` is the top-left corner
and ``width``/``height`` the extent, all as fractions of the image size.
Prediction confidences are clamped to [0, 1] at construction, so downstream
stages can rely on the range without re-checking.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any


def clamp_unit(value: float) -> float:
    """Clamp to [0, 1]; NaN becomes 0.0."""
    if math.isnan(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


@dataclass(frozen=True, slots=True)
class BoundingBox:
    """Axis-aligned box in normalized image coordinates.

    Attributes:
        x: Left edge (0 = image left)
        y: Top edge (0 = image top)
        width: Box width as a fraction of image width
        height: Box height as a fraction of image height
    """

    x: float
    y: float
    width: float
    height: float

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Box width and height must be non-negative: {self}")

    @classmethod
    def from_xyxy(cls, x1: float, y1: float, x2: float, y2: float) -> BoundingBox:
        """Build a box from corner coordinates; corners may be given in any order."""
        left, right = sorted((x1, x2))
        top, bottom = sorted((y1, y2))
        return cls(left, top, right - left, bottom - top)

    @classmethod
    def from_pixels(
        cls, x1: float, y1: float, x2: float, y2: float, image_width: int, image_height: int
    ) -> BoundingBox:
        """Normalize a pixel-space ``[x1, y1, x2, y2]`` box."""
        if image_width <= 0 or image_height <= 0:
            raise ValueError(f"Invalid image size: {image_width}x{image_height}")
        return cls.from_xyxy(
            x1 / image_width, y1 / image_height, x2 / image_width, y2 / image_height
        )

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    def to_xyxy(self) -> tuple[float, float, float, float]:
        return self.x, self.y, self.right, self.bottom

    def to_pixels(self, image_width: int, image_height: int) -> list[float]:
        """Convert to pixel-space ``[x1, y1, x2, y2]``."""
        return [
            self.x * image_width,
            self.y * image_height,
            self.right * image_width,
            self.bottom * image_height,
        ]

    def clipped(self) -> BoundingBox:
        """Return the part of this box inside the unit square."""
        left = clamp_unit(self.x)
        top = clamp_unit(self.y)
        right = clamp_unit(self.right)
        bottom = clamp_unit(self.bottom)
        return BoundingBox(left, top, max(right - left, 0.0), max(bottom - top, 0.0))

    def intersection_area(self, other: BoundingBox) -> float:
        overlap_w = min(self.right, other.right) - max(self.x, other.x)
        overlap_h = min(self.bottom, other.bottom) - max(self.y, other.y)
        if overlap_w <= 0 or overlap_h <= 0:
            return 0.0
        return overlap_w * overlap_h

    def iou(self, other: BoundingBox) -> float:
        """Intersection over union; 0.0 when either box has zero area."""
        if self.area <= 0 or other.area <= 0:
            return 0.0
        intersection = self.intersection_area(other)
        union = self.area + other.area - intersection
        if union <= 0:
            return 0.0
        return intersection / union

    def to_dict(self) -> dict[str, float]:
        return {
            "x": round(self.x, 6),
            "y": round(self.y, 6),
            "width": round(self.width, 6),
            "height": round(self.height, 6),
        }


@dataclass(frozen=True, slots=True)
class Prediction:
    """A single model prediction.

    Attributes:
        label: Class label, if known
        class_id: Numeric class id, if known
        confidence: Score clamped to [0, 1]
        bounding_box: Normalized box for detection/segmentation outputs
        metadata: Free-form extra values (mask coverage, raw logits, ...)
    """

    label: str | None = None
    class_id: int | None = None
    confidence: float = 0.0
    bounding_box: BoundingBox | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        if self.label is None and self.class_id is None:
            raise ValueError("A prediction needs a label or a class id")
        object.__setattr__(self, "confidence", clamp_unit(float(self.confidence)))

    @property
    def name(self) -> str:
        """Label if present, otherwise ``class_<id>``."""
        return self.label if self.label is not None else f"class_{self.class_id}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "label": self.label,
            "class_id": self.class_id,
            "confidence": round(self.confidence, 4),
        }
        if self.bounding_box is not None:
            result["bounding_box"] = self.bounding_box.to_dict()
        if self.metadata:
            result["metadata"] = self.metadata
        return result
