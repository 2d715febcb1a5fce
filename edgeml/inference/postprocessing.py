"""Result post-processing: confidence filtering, top-K and non-max suppression.

Also provides distribution-based filters (probability distance, outliers,
adaptive threshold) and per-class aggregation across the images of a batch.

All functions are pure and return new lists; input order is the tie-breaker
everywhere so results are deterministic.

NMS is greedy: boxes are visited in descending confidence (stable on ties),
each kept box suppresses every later box whose IoU with it exceeds the
threshold. Predictions without a bounding box are not part of suppression;
they are appended after the kept boxes in their original order. Running NMS
on its own output changes nothing.

Usage:
    processor = ResultPostprocessor(confidence_threshold=0.5, iou_threshold=0.45, top_k=10)
    predictions = processor.process(raw_predictions, descriptor.model_type)
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray

from edgeml.core.config import Settings
from edgeml.inference.predictions import BoundingBox, Prediction
from edgeml.lifecycle.descriptor import ModelType

# Absorbs float rounding in means and differences of equal confidences
_TOLERANCE = 1e-9


def intersection_over_union(a: BoundingBox, b: BoundingBox) -> float:
    """IoU of two normalized boxes; zero-area boxes give 0.0."""
    return a.iou(b)


def filter_by_confidence(predictions: Iterable[Prediction], threshold: float) -> list[Prediction]:
    """Keep predictions whose confidence is at least ``threshold``."""
    return [p for p in predictions if p.confidence >= threshold]


def top_k(predictions: Sequence[Prediction], k: int) -> list[Prediction]:
    """Return the ``k`` highest-confidence predictions, ties in input order.

    Raises:
        ValueError: If ``k`` is negative
    """
    if k < 0:
        raise ValueError(f"k must be non-negative, got {k}")
    return sorted(predictions, key=lambda p: -p.confidence)[:k]


def filter_by_class(
    predictions: Iterable[Prediction],
    labels: Iterable[str] = (),
    class_ids: Iterable[int] = (),
) -> list[Prediction]:
    """Keep predictions whose label or class id is in the allowed sets."""
    allowed_labels = set(labels)
    allowed_ids = set(class_ids)
    return [
        p
        for p in predictions
        if (p.label is not None and p.label in allowed_labels)
        or (p.class_id is not None and p.class_id in allowed_ids)
    ]


def filter_by_area(
    predictions: Iterable[Prediction],
    min_area: float = 0.0,
    max_area: float = 1.0,
) -> list[Prediction]:
    """Keep boxed predictions whose normalized area is within bounds.

    Predictions without a box are kept.
    """
    return [
        p
        for p in predictions
        if p.bounding_box is None or min_area <= p.bounding_box.area <= max_area
    ]


def filter_by_probability_distance(
    predictions: Iterable[Prediction], min_distance: float = 0.1
) -> list[Prediction]:
    """Keep a descending chain of predictions at least ``min_distance`` apart.

    Predictions are visited in descending confidence; the first is measured
    against a confidence of 1.0, each later one against the last kept. A
    single prediction is returned unchanged.
    """
    ordered = sorted(predictions, key=lambda p: -p.confidence)
    if len(ordered) <= 1:
        return ordered

    kept: list[Prediction] = []
    last_confidence = 1.0
    for prediction in ordered:
        if last_confidence - prediction.confidence >= min_distance - _TOLERANCE:
            kept.append(prediction)
            last_confidence = prediction.confidence
    return kept


def filter_outliers(
    predictions: Sequence[Prediction], standard_deviations: float = 2.0
) -> list[Prediction]:
    """Drop predictions whose confidence is more than N population std devs from the mean."""
    if len(predictions) <= 1:
        return list(predictions)
    confidences = np.array([p.confidence for p in predictions], dtype=np.float64)
    mean = confidences.mean()
    spread = standard_deviations * confidences.std()
    within = np.abs(confidences - mean) <= spread + _TOLERANCE
    return [p for p, keep in zip(predictions, within, strict=True) if keep]


def filter_with_adaptive_threshold(
    predictions: Sequence[Prediction], spread: float = 0.5
) -> list[Prediction]:
    """Keep predictions scoring at least ``mean - spread * std`` of the batch."""
    if len(predictions) <= 1:
        return list(predictions)
    confidences = np.array([p.confidence for p in predictions], dtype=np.float64)
    threshold = confidences.mean() - spread * confidences.std()
    return [
        p
        for p, confidence in zip(predictions, confidences, strict=True)
        if confidence >= threshold - _TOLERANCE
    ]


def iou_matrix(boxes: Sequence[BoundingBox]) -> NDArray[np.float64]:
    """Pairwise IoU matrix for ``boxes`` (N x N).

    Uses the same arithmetic as BoundingBox.iou so values agree exactly.
    """
    xywh = np.array([[b.x, b.y, b.width, b.height] for b in boxes], dtype=np.float64).reshape(-1, 4)
    x, y, w, h = xywh[:, 0], xywh[:, 1], xywh[:, 2], xywh[:, 3]
    right = x + w
    bottom = y + h
    areas = w * h

    overlap_w = np.minimum(right[:, None], right[None, :]) - np.maximum(x[:, None], x[None, :])
    overlap_h = np.minimum(bottom[:, None], bottom[None, :]) - np.maximum(y[:, None], y[None, :])
    intersection = np.where((overlap_w > 0) & (overlap_h > 0), overlap_w * overlap_h, 0.0)
    union = areas[:, None] + areas[None, :] - intersection

    valid = (areas[:, None] > 0) & (areas[None, :] > 0) & (union > 0)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(valid, intersection / union, 0.0)


def apply_nms(
    predictions: Sequence[Prediction],
    iou_threshold: float,
    *,
    class_aware: bool = False,
) -> list[Prediction]:
    """Greedy non-max suppression over predictions that carry a bounding box.

    Args:
        predictions: Predictions in any order
        iou_threshold: Boxes overlapping a kept box by more than this are dropped
        class_aware: Only suppress boxes that share the kept box's class

    Returns:
        Kept boxed predictions in descending confidence, then all boxless
        predictions in input order
    """
    boxed = [p for p in predictions if p.bounding_box is not None]
    boxless = [p for p in predictions if p.bounding_box is None]
    if not boxed:
        return boxless

    ious = iou_matrix([p.bounding_box for p in boxed])  # type: ignore[misc]
    scores = np.array([p.confidence for p in boxed], dtype=np.float64)
    order = np.argsort(-scores, kind="stable")

    if class_aware:
        classes = np.array([p.name for p in boxed], dtype=object)
        same_class = classes[:, None] == classes[None, :]
    else:
        same_class = None

    suppressed = np.zeros(len(boxed), dtype=bool)
    keep: list[int] = []
    for index in order:
        if suppressed[index]:
            continue
        keep.append(int(index))
        overlaps = ious[index] > iou_threshold
        if same_class is not None:
            overlaps &= same_class[index]
        suppressed |= overlaps

    return [boxed[i] for i in keep] + boxless


@dataclass(frozen=True, slots=True)
class ResultPostprocessor:
    """Confidence filter, then NMS for box-producing models, then top-K.

    Attributes:
        confidence_threshold: Minimum confidence kept
        iou_threshold: NMS suppression threshold
        top_k: Maximum predictions returned (None keeps all)
        class_aware_nms: Suppress only within a class
    """

    confidence_threshold: float = 0.5
    iou_threshold: float = 0.45
    top_k: int | None = None
    class_aware_nms: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError(f"confidence_threshold must be within [0, 1]: {self.confidence_threshold}")
        if not 0.0 <= self.iou_threshold <= 1.0:
            raise ValueError(f"iou_threshold must be within [0, 1]: {self.iou_threshold}")
        if self.top_k is not None and self.top_k < 0:
            raise ValueError(f"top_k must be non-negative: {self.top_k}")

    @classmethod
    def from_settings(cls, settings: Settings) -> ResultPostprocessor:
        return cls(
            confidence_threshold=settings.confidence_threshold,
            iou_threshold=settings.nms_iou_threshold,
            top_k=settings.top_k,
            class_aware_nms=settings.class_aware_nms,
        )

    def process(self, predictions: Sequence[Prediction], model_type: ModelType) -> list[Prediction]:
        result = filter_by_confidence(predictions, self.confidence_threshold)
        if model_type.produces_boxes:
            result = apply_nms(result, self.iou_threshold, class_aware=self.class_aware_nms)
        else:
            result = sorted(result, key=lambda p: -p.confidence)
        if self.top_k is not None:
            result = top_k(result, self.top_k)
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "confidence_threshold": self.confidence_threshold,
            "iou_threshold": self.iou_threshold,
            "top_k": self.top_k,
            "class_aware_nms": self.class_aware_nms,
        }


# =============================================================================
# Aggregation across images
# =============================================================================


@dataclass(frozen=True, slots=True)
class ClassDetectionStats:
    count: int
    average_confidence: float
    min_confidence: float
    max_confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "average_confidence": round(self.average_confidence, 4),
            "min_confidence": round(self.min_confidence, 4),
            "max_confidence": round(self.max_confidence, 4),
        }


@dataclass(frozen=True, slots=True)
class DetectionSummary:
    """Per-class detection statistics over a set of images."""

    total_detections: int
    image_count: int
    class_stats: dict[str, ClassDetectionStats]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_detections": self.total_detections,
            "image_count": self.image_count,
            "class_stats": {name: stats.to_dict() for name, stats in self.class_stats.items()},
        }


@dataclass(frozen=True, slots=True)
class ClassificationSummary:
    """Distribution of each image's top class over a set of images."""

    total_images: int
    unique_classes: frozenset[str]
    class_distribution: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_images": self.total_images,
            "unique_classes": sorted(self.unique_classes),
            "class_distribution": dict(self.class_distribution),
        }


def aggregate_detections(per_image: Sequence[Sequence[Prediction]]) -> DetectionSummary:
    """Group every prediction of every image by class name.

    Classes appear in ``class_stats`` in order of first occurrence.
    """
    grouped: dict[str, list[float]] = {}
    for predictions in per_image:
        for prediction in predictions:
            grouped.setdefault(prediction.name, []).append(prediction.confidence)

    class_stats = {
        name: ClassDetectionStats(
            count=len(confidences),
            average_confidence=float(np.mean(confidences)),
            min_confidence=min(confidences),
            max_confidence=max(confidences),
        )
        for name, confidences in grouped.items()
    }
    return DetectionSummary(
        total_detections=sum(stats.count for stats in class_stats.values()),
        image_count=len(per_image),
        class_stats=class_stats,
    )


def aggregate_classifications(
    per_image: Sequence[Sequence[Prediction]],
) -> ClassificationSummary:
    """Count the top-confidence class of each image.

    Images without predictions count towards ``total_images`` only.
    """
    distribution: dict[str, int] = {}
    for predictions in per_image:
        if not predictions:
            continue
        top = top_k(predictions, 1)[0]
        distribution[top.name] = distribution.get(top.name, 0) + 1

    return ClassificationSummary(
        total_images=len(per_image),
        unique_classes=frozenset(distribution),
        class_distribution=distribution,
    )
