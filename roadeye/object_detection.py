"""
Object Detection Post-Processing Module
=======================================

Turns the raw output tensor of a single-shot detector into a short list of
vehicle boxes: decode, class filter, non-maximum suppression.

Two output layouts are supported:
- Per-box (YOLOv10 end-to-end export): [1, N, C] with rows
  (x1, y1, x2, y2, confidence, class_id)
- Per-channel (YOLOv8/11/12 export): [1, C, N] with channels
  (cx, cy, w, h, score_0 ... score_{C-5})

References:
- YOLOv8 output format: https://docs.ultralytics.com/
- YOLOv10 NMS-free head: A. Wang et al., "YOLOv10: Real-Time End-to-End
  Object Detection," arXiv:2405.14458
- NMS: A. Neubeck and L. Van Gool, "Efficient Non-Maximum Suppression," ICPR 2006
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, List, Optional, Sequence

import numpy as np

from .labels import LabelSet, UNKNOWN_LABEL

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.30
DEFAULT_NMS_THRESHOLD = 0.45

# Shape heuristic for the per-channel layout
PER_CHANNEL_MIN_CHANNELS = 10
PER_CHANNEL_MIN_ELEMENTS = 1000

# Box coordinates + confidence + class id
PER_BOX_MIN_CHANNELS = 6


class OutputLayout(Enum):
    """
    Memory layout of the detector output tensor.

    PER_BOX: One row per candidate, corner coordinates, score and class id
    PER_CHANNEL: One row per feature channel, center/size box and class scores
    """
    PER_BOX = "per_box"
    PER_CHANNEL = "per_channel"


@dataclass(frozen=True)
class BoundingBox:
    """
    A detected object in normalized image coordinates.

    Attributes:
        x1, y1: Top-left corner
        x2, y2: Bottom-right corner
        confidence: Detection score (0-1)
        class_index: Class id reported by the network
        class_name: Resolved label, may carry a distance annotation for display
    """
    x1: float
    y1: float
    x2: float
    y2: float
    confidence: float
    class_index: int
    class_name: str

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def is_valid(self) -> bool:
        return self.x1 < self.x2 and self.y1 < self.y2

    def with_label(self, class_name: str) -> "BoundingBox":
        """Copy of this box with a different display label."""
        return replace(self, class_name=class_name)


@dataclass(frozen=True)
class OutputSpec:
    """
    Output tensor geometry resolved once at model load.

    Attributes:
        num_elements: Number of candidate boxes
        num_channel: Values per candidate
        layout: Memory layout of the tensor
    """
    num_elements: int
    num_channel: int
    layout: OutputLayout

    @property
    def is_per_channel(self) -> bool:
        return self.layout == OutputLayout.PER_CHANNEL

    @property
    def num_classes(self) -> int:
        """Class score channels (per-channel layout only)."""
        return self.num_channel - 4 if self.is_per_channel else 0


def resolve_output_spec(output_shape: Optional[Sequence]) -> Optional[OutputSpec]:
    """
    Classify an output tensor shape.

    A shape [1, C, N] with C > 10 and N > 1000 is the per-channel layout,
    any other rank-3 shape [1, N, C] is per-box. A rank-2 shape is treated
    the same way without the batch dimension.

    Args:
        output_shape: Tensor shape as reported by the runtime

    Returns:
        OutputSpec, or None if the shape can't be used
    """
    if output_shape is None:
        return None

    dims = list(output_shape)
    if len(dims) == 3:
        dims = dims[1:]
    elif len(dims) != 2:
        logger.warning("Unsupported output tensor rank %d: %s", len(dims), list(output_shape))
        return None

    # Dynamic dimensions come back as strings or None
    if not all(isinstance(d, (int, np.integer)) and d > 0 for d in dims):
        logger.warning("Output tensor shape has non-positive or dynamic dims: %s", list(output_shape))
        return None

    first, second = int(dims[0]), int(dims[1])

    if first > PER_CHANNEL_MIN_CHANNELS and second > PER_CHANNEL_MIN_ELEMENTS:
        return OutputSpec(num_elements=second, num_channel=first, layout=OutputLayout.PER_CHANNEL)

    if second < PER_BOX_MIN_CHANNELS:
        logger.warning("Per-box output needs at least %d channels, got %d",
                       PER_BOX_MIN_CHANNELS, second)
        return None

    return OutputSpec(num_elements=first, num_channel=second, layout=OutputLayout.PER_BOX)


def _as_matrix(buffer, rows: int, cols: int) -> Optional[np.ndarray]:
    flat = np.asarray(buffer, dtype=np.float32).reshape(-1)
    if flat.size < rows * cols:
        logger.warning("Output buffer too small: %d values, expected %d", flat.size, rows * cols)
        return None
    return flat[:rows * cols].reshape(rows, cols)


def decode_per_box(
    buffer,
    num_elements: int,
    num_channel: int,
    labels: LabelSet,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
) -> List[BoundingBox]:
    """
    Decode a per-box output buffer.

    For each row r the confidence is buffer[r*C + 4]; rows above the
    threshold yield a box with corners from channels 0-3 and the class id
    from channel 5, truncated to an integer.

    Args:
        buffer: Flat float output (or any array of the right size)
        num_elements: Number of rows N
        num_channel: Values per row C
        labels: Class names indexed by class id
        confidence_threshold: Minimum confidence (exclusive)

    Returns:
        Candidate boxes in row order. Inverted boxes and rows with a
        non-finite class id are dropped; out-of-range class ids are
        labeled "unknown".
    """
    rows = _as_matrix(buffer, num_elements, num_channel)
    if rows is None:
        return []

    boxes = []
    for r in np.flatnonzero(rows[:, 4] > confidence_threshold):
        # NaN or inf class channel (float16 overflow)
        if not np.isfinite(rows[r, 5]):
            continue

        class_id = int(rows[r, 5])
        x1, y1, x2, y2 = (float(v) for v in rows[r, :4])
        box = BoundingBox(
            x1=x1, y1=y1, x2=x2, y2=y2,
            confidence=float(rows[r, 4]),
            class_index=class_id,
            class_name=labels.name_for(class_id)
        )
        if box.is_valid:
            boxes.append(box)

    return boxes


def decode_per_channel(
    buffer,
    num_elements: int,
    num_channel: int,
    labels: LabelSet,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
) -> List[BoundingBox]:
    """
    Decode a per-channel (YOLO-style) output buffer.

    Channel c of element i lives at buffer[c*N + i]. The best class score
    over channels 4..C-1 is the confidence; boxes are stored as center and
    size and converted to corners.

    Args:
        buffer: Flat float output
        num_elements: Number of candidates N
        num_channel: Channels C (4 box params + class scores)
        labels: Class names indexed by class id
        confidence_threshold: Minimum confidence (exclusive)

    Returns:
        Candidate boxes in element order
    """
    if num_channel <= 4:
        return []

    channels = _as_matrix(buffer, num_channel, num_elements)
    if channels is None:
        return []

    scores = channels[4:]
    # argmax keeps the lowest class id on ties
    best_class = np.argmax(scores, axis=0)
    best_score = scores[best_class, np.arange(num_elements)]

    boxes = []
    for i in np.flatnonzero(best_score > confidence_threshold):
        cx, cy, w, h = (float(v) for v in channels[:4, i])
        x1, y1 = cx - w / 2, cy - h / 2
        x2, y2 = cx + w / 2, cy + h / 2

        class_id = int(best_class[i])
        box = BoundingBox(
            x1=x1, y1=y1, x2=x2, y2=y2,
            confidence=float(best_score[i]),
            class_index=class_id,
            class_name=labels.name_for(class_id)
        )
        if box.is_valid:
            boxes.append(box)

    return boxes


def decode_output(
    buffer,
    spec: OutputSpec,
    labels: LabelSet,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
) -> List[BoundingBox]:
    """Decode a buffer with the decoder matching the resolved layout."""
    if spec.is_per_channel:
        return decode_per_channel(
            buffer, spec.num_elements, spec.num_channel, labels, confidence_threshold
        )
    return decode_per_box(
        buffer, spec.num_elements, spec.num_channel, labels, confidence_threshold
    )


def filter_classes(
    boxes: Iterable[BoundingBox],
    allowed_classes: Iterable[str]
) -> List[BoundingBox]:
    """
    Keep boxes whose class name is in the allow-list.

    Matching is case-insensitive and exact. "unknown" never passes.

    Args:
        boxes: Candidate boxes
        allowed_classes: Allowed class names

    Returns:
        Matching boxes in input order
    """
    allowed = {name.lower() for name in allowed_classes}
    allowed.discard(UNKNOWN_LABEL)
    return [b for b in boxes if b.class_name.lower() in allowed]


def compute_iou(a: BoundingBox, b: BoundingBox) -> float:
    """
    Intersection over Union of two axis-aligned boxes.

    Returns:
        IoU in [0, 1]; 0.0 when the boxes don't overlap
    """
    x_min = max(a.x1, b.x1)
    y_min = max(a.y1, b.y1)
    x_max = min(a.x2, b.x2)
    y_max = min(a.y2, b.y2)

    if x_min >= x_max or y_min >= y_max:
        return 0.0

    intersection = (x_max - x_min) * (y_max - y_min)
    union = a.area + b.area - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def non_max_suppression(
    boxes: Sequence[BoundingBox],
    iou_threshold: float = DEFAULT_NMS_THRESHOLD
) -> List[BoundingBox]:
    """
    Greedy per-class non-maximum suppression.

    Boxes are visited by descending confidence (equal confidences keep
    their input order). Each selected box removes every remaining box of
    the same class whose IoU with it exceeds the threshold.

    Args:
        boxes: Candidate boxes
        iou_threshold: Overlap above which a box is suppressed

    Returns:
        Selected boxes, highest confidence first
    """
    remaining = sorted(boxes, key=lambda b: b.confidence, reverse=True)
    selected = []

    while remaining:
        best = remaining.pop(0)
        selected.append(best)
        remaining = [
            b for b in remaining
            if b.class_index != best.class_index or compute_iou(best, b) <= iou_threshold
        ]

    return selected
