"""Unit and property tests for result post-processing."""

from __future__ import annotations

import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from edgeml.core.config import Settings
from edgeml.inference.postprocessing import (
    ResultPostprocessor,
    aggregate_classifications,
    aggregate_detections,
    apply_nms,
    filter_by_area,
    filter_by_class,
    filter_by_confidence,
    filter_by_probability_distance,
    filter_outliers,
    filter_with_adaptive_threshold,
    intersection_over_union,
    iou_matrix,
    top_k,
)
from edgeml.inference.predictions import BoundingBox, Prediction
from edgeml.lifecycle.descriptor import ModelType

# =============================================================================
# Strategies
# =============================================================================

unit = st.floats(min_value=0.0, max_value=1.0, allow_nan=False)


@st.composite
def bounding_boxes(draw: st.DrawFn) -> BoundingBox:
    """Boxes inside the unit square, including degenerate zero-area ones."""
    x = draw(st.floats(min_value=0.0, max_value=0.95))
    y = draw(st.floats(min_value=0.0, max_value=0.95))
    width = draw(st.floats(min_value=0.0, max_value=1.0 - x))
    height = draw(st.floats(min_value=0.0, max_value=1.0 - y))
    return BoundingBox(x, y, width, height)


@st.composite
def predictions(draw: st.DrawFn, boxed: bool = True) -> Prediction:
    return Prediction(
        label=draw(st.sampled_from(["person", "car", "dog"])),
        confidence=draw(st.sampled_from([0.1, 0.5, 0.5, 0.9]) | unit),
        bounding_box=draw(bounding_boxes()) if boxed else None,
    )


def det(label: str, confidence: float, x: float, y: float, w: float = 0.2, h: float = 0.2) -> Prediction:
    return Prediction(label=label, confidence=confidence, bounding_box=BoundingBox(x, y, w, h))


# =============================================================================
# Filters
# =============================================================================


class TestFilters:
    def test_filter_by_confidence_is_inclusive(self):
        items = [Prediction(label="a", confidence=c) for c in (0.2, 0.5, 0.8)]
        assert [p.confidence for p in filter_by_confidence(items, 0.5)] == [0.5, 0.8]

    def test_top_k_is_stable_on_ties(self):
        items = [
            Prediction(label="first", confidence=0.5),
            Prediction(label="high", confidence=0.9),
            Prediction(label="second", confidence=0.5),
            Prediction(label="third", confidence=0.5),
        ]
        assert [p.label for p in top_k(items, 3)] == ["high", "first", "second"]

    def test_top_k_edge_cases(self):
        items = [Prediction(label="a", confidence=0.5)]
        assert top_k(items, 0) == []
        assert top_k(items, 10) == items
        with pytest.raises(ValueError):
            top_k(items, -1)

    def test_filter_by_class(self):
        items = [
            Prediction(label="person", class_id=0),
            Prediction(label="car", class_id=2),
            Prediction(class_id=5),
        ]
        kept = filter_by_class(items, labels=["person"], class_ids=[5])
        assert [p.name for p in kept] == ["person", "class_5"]

    def test_filter_by_area_keeps_boxless(self):
        items = [
            det("small", 0.9, 0, 0, 0.01, 0.01),
            det("large", 0.9, 0, 0, 0.5, 0.5),
            Prediction(label="scene", confidence=0.9),
        ]
        kept = filter_by_area(items, min_area=0.001, max_area=0.1)
        assert [p.label for p in kept] == ["small", "scene"]


# =============================================================================
# IoU
# =============================================================================


class TestIoU:
    def test_intersection_over_union_matches_box_method(self):
        a, b = BoundingBox(0, 0, 0.4, 0.4), BoundingBox(0.2, 0.2, 0.4, 0.4)
        assert intersection_over_union(a, b) == a.iou(b)

    def test_zero_area_box_has_zero_iou(self):
        point = BoundingBox(0.3, 0.3, 0.0, 0.0)
        assert intersection_over_union(point, point) == 0.0

    @given(boxes=st.lists(bounding_boxes(), min_size=1, max_size=8))
    def test_matrix_agrees_with_pairwise_iou(self, boxes):
        matrix = iou_matrix(boxes)
        for i, a in enumerate(boxes):
            for j, b in enumerate(boxes):
                assert matrix[i, j] == pytest.approx(a.iou(b), abs=1e-12)

    def test_matrix_of_no_boxes(self):
        assert iou_matrix([]).shape == (0, 0)


# =============================================================================
# Non-Max Suppression
# =============================================================================


class TestApplyNms:
    def test_suppresses_overlapping_lower_confidence_box(self):
        strong = det("person", 0.9, 0.10, 0.10)
        weak = det("person", 0.6, 0.12, 0.12)
        far = det("person", 0.7, 0.70, 0.70)
        assert apply_nms([weak, strong, far], iou_threshold=0.5) == [strong, far]

    def test_threshold_is_strict(self):
        a = BoundingBox(0.0, 0.0, 0.2, 0.2)
        b = BoundingBox(0.1, 0.0, 0.2, 0.2)
        first = Prediction(label="x", confidence=0.9, bounding_box=a)
        second = Prediction(label="x", confidence=0.8, bounding_box=b)
        threshold = a.iou(b)
        assert apply_nms([first, second], iou_threshold=threshold) == [first, second]
        assert apply_nms([first, second], iou_threshold=threshold - 1e-9) == [first]

    def test_ties_keep_input_order(self):
        first = det("a", 0.8, 0.1, 0.1)
        second = det("b", 0.8, 0.1, 0.1)
        assert apply_nms([first, second], iou_threshold=0.5) == [first]

    def test_class_aware_only_suppresses_same_class(self):
        person = det("person", 0.9, 0.1, 0.1)
        dog = det("dog", 0.8, 0.1, 0.1)
        other_person = det("person", 0.7, 0.11, 0.11)
        assert apply_nms([person, dog, other_person], 0.5, class_aware=True) == [person, dog]
        assert apply_nms([person, dog, other_person], 0.5) == [person]

    def test_boxless_predictions_pass_through_after_boxes(self):
        scene = Prediction(label="indoor", confidence=0.4)
        box = det("person", 0.9, 0.1, 0.1)
        assert apply_nms([scene, box], 0.5) == [box, scene]

    def test_zero_area_boxes_never_suppress(self):
        point = Prediction(label="x", confidence=0.9, bounding_box=BoundingBox(0.1, 0.1, 0, 0))
        twin = Prediction(label="x", confidence=0.8, bounding_box=BoundingBox(0.1, 0.1, 0, 0))
        assert apply_nms([point, twin], 0.0) == [point, twin]

    def test_empty(self):
        assert apply_nms([], 0.5) == []

    @settings(max_examples=200)
    @given(
        items=st.lists(predictions(), max_size=12),
        threshold=unit,
        class_aware=st.booleans(),
    )
    def test_nms_is_idempotent(self, items, threshold, class_aware):
        once = apply_nms(items, threshold, class_aware=class_aware)
        twice = apply_nms(once, threshold, class_aware=class_aware)
        assert twice == once

    @given(items=st.lists(predictions(), max_size=12), threshold=unit)
    def test_kept_boxes_do_not_overlap_beyond_threshold(self, items, threshold):
        kept = apply_nms(items, threshold)
        boxes = [p.bounding_box for p in kept]
        ious = iou_matrix(boxes)
        np.fill_diagonal(ious, 0.0)
        assert (ious <= threshold).all()

    @given(items=st.lists(predictions(), max_size=12), threshold=unit)
    def test_output_is_sorted_subset(self, items, threshold):
        kept = apply_nms(items, threshold)
        assert all(any(k is p for p in items) for k in kept)
        confidences = [p.confidence for p in kept]
        assert confidences == sorted(confidences, reverse=True)


# =============================================================================
# ResultPostprocessor
# =============================================================================


class TestResultPostprocessor:
    def test_detection_pipeline(self):
        processor = ResultPostprocessor(confidence_threshold=0.5, iou_threshold=0.5, top_k=2)
        raw = [
            det("person", 0.95, 0.10, 0.10),
            det("person", 0.90, 0.11, 0.11),
            det("car", 0.80, 0.60, 0.60),
            det("dog", 0.70, 0.30, 0.70),
            det("cat", 0.30, 0.80, 0.10),
        ]
        result = processor.process(raw, ModelType.detection())
        assert [(p.label, p.confidence) for p in result] == [("person", 0.95), ("car", 0.80)]

    def test_classification_sorts_without_nms(self):
        processor = ResultPostprocessor(confidence_threshold=0.1)
        raw = [
            Prediction(label="cat", confidence=0.2),
            Prediction(label="dog", confidence=0.7),
            Prediction(label="fox", confidence=0.05),
        ]
        result = processor.process(raw, ModelType.classification())
        assert [p.label for p in result] == ["dog", "cat"]

    def test_boxed_custom_outputs_are_not_suppressed(self):
        processor = ResultPostprocessor(confidence_threshold=0.0)
        raw = [det("a", 0.6, 0.1, 0.1), det("b", 0.9, 0.1, 0.1)]
        assert [p.label for p in processor.process(raw, ModelType.custom("depth"))] == ["b", "a"]

    @pytest.mark.parametrize(
        "kwargs",
        [{"confidence_threshold": 1.5}, {"iou_threshold": -0.1}, {"top_k": -1}],
    )
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            ResultPostprocessor(**kwargs)

    def test_from_settings(self):
        settings_ = Settings(
            _env_file=None,
            confidence_threshold=0.3,
            nms_iou_threshold=0.6,
            top_k=5,
            class_aware_nms=True,
        )
        processor = ResultPostprocessor.from_settings(settings_)
        assert processor.to_dict() == {
            "confidence_threshold": 0.3,
            "iou_threshold": 0.6,
            "top_k": 5,
            "class_aware_nms": True,
        }


# =============================================================================
# Distribution Filters
# =============================================================================


def cls(label: str, confidence: float) -> Prediction:
    return Prediction(label=label, confidence=confidence)


def confidences(result: list[Prediction]) -> list[float]:
    return [p.confidence for p in result]


class TestProbabilityDistance:
    def test_keeps_descending_chain_with_gaps(self):
        raw = [cls("b", 0.8), cls("d", 0.55), cls("a", 0.85), cls("e", 0.3), cls("c", 0.6)]
        result = filter_by_probability_distance(raw, min_distance=0.1)
        assert [p.label for p in result] == ["a", "c", "e"]

    def test_first_prediction_is_measured_against_certainty(self):
        result = filter_by_probability_distance([cls("a", 0.95), cls("b", 0.5)], min_distance=0.1)
        assert [p.label for p in result] == ["b"]

    def test_exact_gap_is_kept_despite_float_rounding(self):
        result = filter_by_probability_distance([cls("a", 0.9), cls("b", 0.8)], min_distance=0.1)
        assert confidences(result) == [0.9, 0.8]

    def test_single_prediction_unchanged(self):
        assert confidences(filter_by_probability_distance([cls("a", 0.99)])) == [0.99]

    @given(st.lists(st.builds(cls, st.just("x"), unit), max_size=20), st.floats(0.01, 0.5))
    def test_result_gaps_respect_min_distance(self, raw, min_distance):
        result = confidences(filter_by_probability_distance(raw, min_distance))
        if len(raw) > 1:
            for higher, lower in zip([1.0, *result], result, strict=False):
                assert higher - lower >= min_distance - 1e-9


class TestOutlierFilter:
    def test_drops_value_far_from_the_mean(self):
        raw = [cls(f"c{i}", 0.5) for i in range(9)] + [cls("spike", 0.95)]
        result = filter_outliers(raw, standard_deviations=2.0)
        assert len(result) == 9
        assert "spike" not in {p.label for p in result}

    def test_identical_confidences_all_kept(self):
        raw = [cls("a", 0.1), cls("b", 0.1), cls("c", 0.1)]
        assert filter_outliers(raw) == raw

    def test_wide_bounds_keep_everything(self):
        raw = [cls("a", 0.1), cls("b", 0.9)]
        assert filter_outliers(raw) == raw

    def test_short_inputs_unchanged(self):
        assert filter_outliers([]) == []
        assert confidences(filter_outliers([cls("a", 0.2)])) == [0.2]


class TestAdaptiveThreshold:
    def test_threshold_is_half_a_deviation_below_mean(self):
        raw = [cls("a", 0.9), cls("b", 0.3), cls("c", 0.8), cls("d", 0.2)]
        # mean 0.55, std ~0.304, threshold ~0.398
        assert [p.label for p in filter_with_adaptive_threshold(raw)] == ["a", "c"]

    def test_identical_confidences_all_kept(self):
        raw = [cls("a", 0.1), cls("b", 0.1), cls("c", 0.1)]
        assert filter_with_adaptive_threshold(raw) == raw

    @given(st.lists(st.builds(cls, st.just("x"), unit), min_size=1, max_size=20))
    def test_best_prediction_always_survives(self, raw):
        result = filter_with_adaptive_threshold(raw)
        assert max(confidences(result)) == max(confidences(raw))


# =============================================================================
# Aggregation
# =============================================================================


class TestAggregation:
    def test_aggregate_detections(self):
        per_image = [
            [det("person", 0.9, 0.1, 0.1), det("car", 0.6, 0.5, 0.5)],
            [det("person", 0.7, 0.2, 0.2)],
            [],
        ]

        summary = aggregate_detections(per_image)

        assert summary.total_detections == 3
        assert summary.image_count == 3
        assert list(summary.class_stats) == ["person", "car"]
        person = summary.class_stats["person"]
        assert person.count == 2
        assert person.average_confidence == pytest.approx(0.8)
        assert (person.min_confidence, person.max_confidence) == (0.7, 0.9)
        assert summary.to_dict()["class_stats"]["car"]["count"] == 1

    def test_aggregate_detections_groups_unlabeled_by_class_id(self):
        summary = aggregate_detections([[Prediction(class_id=3, confidence=0.4)]])
        assert list(summary.class_stats) == ["class_3"]

    def test_aggregate_classifications_counts_top_class(self):
        per_image = [
            [cls("cat", 0.7), cls("dog", 0.2)],
            [cls("dog", 0.9)],
            [cls("cat", 0.6), cls("dog", 0.6)],
            [],
        ]

        summary = aggregate_classifications(per_image)

        assert summary.total_images == 4
        assert summary.class_distribution == {"cat": 2, "dog": 1}
        assert summary.unique_classes == frozenset({"cat", "dog"})
        assert summary.to_dict()["unique_classes"] == ["cat", "dog"]

    def test_empty_input(self):
        assert aggregate_classifications([]).total_images == 0
        assert aggregate_detections([]).class_stats == {}
