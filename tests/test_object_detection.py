"""
Unit tests for the detection post-processing module.
"""

import pytest
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from roadeye.labels import COCO_CLASSES, LabelSet
from roadeye.object_detection import (
    BoundingBox,
    OutputLayout,
    compute_iou,
    decode_output,
    decode_per_box,
    decode_per_channel,
    filter_classes,
    non_max_suppression,
    resolve_output_spec,
)


def make_box(x1, y1, x2, y2, confidence=0.9, class_index=2, class_name="car"):
    return BoundingBox(x1, y1, x2, y2, confidence, class_index, class_name)


@pytest.fixture
def coco_labels():
    return LabelSet(COCO_CLASSES)


class TestResolveOutputSpec:
    """Tests for output layout classification."""

    def test_per_channel_shape(self):
        """Test YOLOv8-style [1, 84, 8400] output."""
        spec = resolve_output_spec([1, 84, 8400])
        assert spec.layout == OutputLayout.PER_CHANNEL
        assert spec.num_channel == 84
        assert spec.num_elements == 8400
        assert spec.num_classes == 80

    def test_per_box_shape(self):
        """Test YOLOv10-style [1, 300, 6] output."""
        spec = resolve_output_spec([1, 300, 6])
        assert spec.layout == OutputLayout.PER_BOX
        assert spec.num_elements == 300
        assert spec.num_channel == 6
        assert not spec.is_per_channel

    def test_small_channel_count_is_per_box(self):
        """Test that a wide tensor with few channels stays per-box."""
        spec = resolve_output_spec([1, 8, 2000])
        assert spec.layout == OutputLayout.PER_BOX

    def test_rank_two_shape(self):
        """Test shapes without a batch dimension."""
        spec = resolve_output_spec([84, 8400])
        assert spec.is_per_channel

    @pytest.mark.parametrize("shape", [
        None,
        [8400],
        [1, 1, 84, 8400],
        [1, 0, 6],
        [1, "num_boxes", 6],
        [1, 300, 4],
    ])
    def test_malformed_shapes(self, shape):
        """Test that unusable shapes resolve to None instead of raising."""
        assert resolve_output_spec(shape) is None


class TestDecodePerBox:
    """Tests for the per-box decoder."""

    def test_decodes_rows_above_threshold(self, coco_labels):
        """Test decoding of a single confident row."""
        rows = np.zeros((300, 6), dtype=np.float32)
        rows[3] = [0.1, 0.2, 0.4, 0.6, 0.8, 2]
        rows[4] = [0.1, 0.2, 0.4, 0.6, 0.25, 2]  # Below threshold

        boxes = decode_per_box(rows.ravel(), 300, 6, coco_labels, 0.3)

        assert len(boxes) == 1
        box = boxes[0]
        assert box.class_index == 2
        assert box.class_name == "car"
        assert box.x1 == pytest.approx(0.1)
        assert box.y2 == pytest.approx(0.6)
        assert box.confidence == pytest.approx(0.8)

    def test_class_id_truncated(self, coco_labels):
        """Test that fractional class ids are truncated."""
        rows = np.zeros((10, 6), dtype=np.float32)
        rows[0] = [0.1, 0.1, 0.2, 0.2, 0.9, 7.8]

        boxes = decode_per_box(rows, 10, 6, coco_labels)

        assert boxes[0].class_index == 7
        assert boxes[0].class_name == "truck"

    def test_out_of_range_class_is_unknown(self, coco_labels):
        """Test that invalid class ids are kept with the "unknown" label."""
        rows = np.zeros((10, 6), dtype=np.float32)
        rows[0] = [0.1, 0.1, 0.2, 0.2, 0.9, 95]
        rows[1] = [0.1, 0.1, 0.2, 0.2, 0.9, -1]

        boxes = decode_per_box(rows, 10, 6, coco_labels)

        assert [b.class_name for b in boxes] == ["unknown", "unknown"]

    def test_inverted_boxes_dropped(self, coco_labels):
        """Test that degenerate boxes are silently dropped."""
        rows = np.zeros((10, 6), dtype=np.float32)
        rows[0] = [0.5, 0.1, 0.2, 0.2, 0.9, 2]   # x1 > x2
        rows[1] = [0.1, 0.3, 0.2, 0.3, 0.9, 2]   # zero height

        assert decode_per_box(rows, 10, 6, coco_labels) == []

    @pytest.mark.parametrize("class_value", [np.nan, np.inf, -np.inf])
    def test_non_finite_class_dropped(self, coco_labels, class_value):
        """Test that a NaN or inf class channel drops only that row."""
        rows = np.zeros((300, 6), dtype=np.float32)
        rows[0] = [0.1, 0.2, 0.3, 0.6, 0.9, class_value]
        rows[1] = [0.1, 0.2, 0.3, 0.6, 0.8, 2]

        boxes = decode_per_box(rows.ravel(), 300, 6, coco_labels)

        assert [b.class_name for b in boxes] == ["car"]

    def test_non_finite_coordinates_dropped(self, coco_labels):
        rows = np.zeros((10, 6), dtype=np.float32)
        rows[0] = [np.nan, 0.2, 0.3, 0.6, 0.9, 2]

        assert decode_per_box(rows, 10, 6, coco_labels) == []

    def test_short_buffer(self, coco_labels):
        """Test that a truncated buffer yields no boxes."""
        assert decode_per_box(np.zeros(10), 300, 6, coco_labels) == []


class TestDecodePerChannel:
    """Tests for the per-channel (YOLO-style) decoder."""

    def test_single_detection_scenario(self, coco_labels):
        """Test the [1, 84, 8400] single-truck scenario."""
        output = np.zeros((84, 8400), dtype=np.float32)
        output[:4, 1234] = [100, 100, 50, 50]
        output[4 + 7, 1234] = 0.9

        boxes = decode_per_channel(output.ravel(), 8400, 84, coco_labels)

        assert len(boxes) == 1
        box = boxes[0]
        assert box.class_index == 7
        assert (box.x1, box.y1, box.x2, box.y2) == (75.0, 75.0, 125.0, 125.0)
        assert box.confidence == pytest.approx(0.9)

    def test_best_class_wins(self, coco_labels):
        """Test that the highest class score picks the class."""
        output = np.zeros((84, 2000), dtype=np.float32)
        output[:4, 0] = [0.5, 0.5, 0.2, 0.2]
        output[4 + 2, 0] = 0.6
        output[4 + 5, 0] = 0.7

        boxes = decode_per_channel(output, 2000, 84, coco_labels)

        assert boxes[0].class_name == "bus"
        assert boxes[0].confidence == pytest.approx(0.7)

    def test_no_candidates_below_threshold(self, coco_labels):
        """Test that low scores produce nothing."""
        output = np.full((84, 2000), 0.2, dtype=np.float32)
        assert decode_per_channel(output, 2000, 84, coco_labels) == []

    def test_decode_output_dispatch(self, coco_labels):
        """Test dispatch on the resolved layout."""
        spec = resolve_output_spec([1, 84, 8400])
        output = np.zeros((84, 8400), dtype=np.float32)
        output[:4, 10] = [0.5, 0.5, 0.1, 0.1]
        output[4 + 2, 10] = 0.95

        boxes = decode_output(output, spec, coco_labels)

        assert len(boxes) == 1
        assert boxes[0].class_name == "car"


class TestClassFilter:
    """Tests for the class allow-list filter."""

    def test_allow_list_scenario(self):
        """Test that only allowed classes survive regardless of confidence."""
        car = make_box(0.1, 0.1, 0.2, 0.2, 0.5, 2, "car")
        person = make_box(0.3, 0.3, 0.5, 0.5, 0.95, 0, "person")

        assert filter_classes([car, person], {"car"}) == [car]

    def test_case_insensitive(self):
        """Test case-insensitive matching."""
        truck = make_box(0.1, 0.1, 0.2, 0.2, 0.5, 7, "Truck")
        assert filter_classes([truck], ["TRUCK"]) == [truck]

    def test_unknown_never_passes(self):
        """Test that "unknown" is rejected even if allow-listed."""
        unknown = make_box(0.1, 0.1, 0.2, 0.2, 0.5, 99, "unknown")
        assert filter_classes([unknown], ["unknown", "car"]) == []

    def test_order_preserved(self):
        """Test that input order is kept."""
        boxes = [make_box(0.1, 0.1, 0.2, 0.2, c) for c in (0.4, 0.9, 0.6)]
        assert filter_classes(boxes, ["car"]) == boxes

    def test_threshold_and_filter_property(self, coco_labels):
        """Test decode + filter never returns low-confidence or foreign boxes."""
        rng = np.random.default_rng(0)
        output = np.zeros((84, 2000), dtype=np.float32)
        output[0:2] = rng.uniform(0.2, 0.8, size=(2, 2000))
        output[2:4] = rng.uniform(0.01, 0.2, size=(2, 2000))
        output[4:] = rng.uniform(0.0, 1.0, size=(80, 2000)) ** 8

        allowed = {"car", "truck", "bus"}
        for threshold in (0.1, 0.3, 0.5, 0.8):
            boxes = filter_classes(
                decode_per_channel(output, 2000, 84, coco_labels, threshold), allowed
            )
            assert all(b.confidence > threshold for b in boxes)
            assert all(b.class_name in allowed for b in boxes)


class TestIoU:
    """Tests for Intersection over Union."""

    def test_identical_boxes(self):
        """Test IoU of a box with itself."""
        box = make_box(0.1, 0.2, 0.4, 0.7)
        assert compute_iou(box, box) == pytest.approx(1.0)

    def test_disjoint_boxes(self):
        """Test IoU of non-overlapping boxes."""
        a = make_box(0.0, 0.0, 0.2, 0.2)
        b = make_box(0.5, 0.5, 0.7, 0.7)
        assert compute_iou(a, b) == 0.0

    def test_touching_boxes(self):
        """Test that shared edges count as no overlap."""
        a = make_box(0.0, 0.0, 0.2, 0.2)
        b = make_box(0.2, 0.0, 0.4, 0.2)
        assert compute_iou(a, b) == 0.0

    def test_partial_overlap(self):
        """Test a known partial overlap."""
        a = make_box(0.0, 0.0, 10.0, 10.0)
        b = make_box(2.5, 0.0, 12.5, 10.0)
        assert compute_iou(a, b) == pytest.approx(0.6)


class TestNonMaxSuppression:
    """Tests for greedy per-class NMS."""

    def test_overlap_scenario(self):
        """Test that the weaker of two overlapping same-class boxes is removed."""
        strong = make_box(0.0, 0.0, 10.0, 10.0, 0.9)
        weak = make_box(2.5, 0.0, 12.5, 10.0, 0.8)

        assert non_max_suppression([weak, strong], 0.45) == [strong]

    def test_different_classes_kept(self):
        """Test that overlap across classes never suppresses."""
        car = make_box(0.0, 0.0, 10.0, 10.0, 0.9, 2, "car")
        truck = make_box(0.0, 0.0, 10.0, 10.0, 0.8, 7, "truck")

        assert non_max_suppression([car, truck]) == [car, truck]

    def test_below_threshold_kept(self):
        """Test that low-overlap boxes survive."""
        a = make_box(0.0, 0.0, 10.0, 10.0, 0.9)
        b = make_box(6.0, 0.0, 16.0, 10.0, 0.8)  # IoU 0.25

        assert len(non_max_suppression([a, b], 0.45)) == 2

    def test_sorted_by_confidence(self):
        """Test output ordering, with stable ties."""
        a = make_box(0.0, 0.0, 1.0, 1.0, 0.5)
        b = make_box(2.0, 2.0, 3.0, 3.0, 0.7)
        c = make_box(4.0, 4.0, 5.0, 5.0, 0.5)

        assert non_max_suppression([a, b, c]) == [b, a, c]

    def test_empty_input(self):
        assert non_max_suppression([]) == []

    def test_idempotent_and_separated(self):
        """Test NMS invariants on random boxes."""
        rng = np.random.default_rng(42)
        boxes = []
        for _ in range(60):
            x, y = rng.uniform(0, 0.8, size=2)
            w, h = rng.uniform(0.05, 0.2, size=2)
            cls = int(rng.integers(0, 3))
            boxes.append(make_box(x, y, x + w, y + h, float(rng.uniform(0.3, 1.0)), cls, str(cls)))

        once = non_max_suppression(boxes, 0.45)
        twice = non_max_suppression(once, 0.45)

        assert once == twice
        for i, a in enumerate(once):
            for b in once[i + 1:]:
                if a.class_index == b.class_index:
                    assert compute_iou(a, b) <= 0.45
