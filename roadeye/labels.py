"""
Class Label Module
==================

Resolves the ordered list of class names a detector was trained on.
Names come from the model's embedded metadata, a plain-text label file,
or the built-in COCO list, in that order.

References:
- COCO dataset classes: https://cocodataset.org/#explore
"""

import ast
import logging
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "unknown"

# COCO class names (80 classes)
COCO_CLASSES = (
    "person", "bicycle", "car", "motorcycle", "airplane", "bus", "train", "truck",
    "boat", "traffic light", "fire hydrant", "stop sign", "parking meter", "bench",
    "bird", "cat", "dog", "horse", "sheep", "cow", "elephant", "bear", "zebra",
    "giraffe", "backpack", "umbrella", "handbag", "tie", "suitcase", "frisbee",
    "skis", "snowboard", "sports ball", "kite", "baseball bat", "baseball glove",
    "skateboard", "surfboard", "tennis racket", "bottle", "wine glass", "cup",
    "fork", "knife", "spoon", "bowl", "banana", "apple", "sandwich", "orange",
    "broccoli", "carrot", "hot dog", "pizza", "donut", "cake", "chair", "couch",
    "potted plant", "bed", "dining table", "toilet", "tv", "laptop", "mouse",
    "remote", "keyboard", "cell phone", "microwave", "oven", "toaster", "sink",
    "refrigerator", "book", "clock", "vase", "scissors", "teddy bear", "hair drier",
    "toothbrush"
)


class LabelSet:
    """
    Immutable ordered sequence of class names, indexable by class id.
    """

    def __init__(self, names: Iterable[str]):
        self._names: Tuple[str, ...] = tuple(str(n) for n in names)

    def __len__(self) -> int:
        return len(self._names)

    def __getitem__(self, index: int) -> str:
        return self._names[index]

    def __iter__(self):
        return iter(self._names)

    def __eq__(self, other) -> bool:
        if isinstance(other, LabelSet):
            return self._names == other._names
        return NotImplemented

    def __repr__(self) -> str:
        return f"LabelSet({len(self._names)} classes)"

    @property
    def names(self) -> Tuple[str, ...]:
        return self._names

    def name_for(self, class_id: int) -> str:
        """Class name for an id, or "unknown" when the id is out of range."""
        if 0 <= class_id < len(self._names):
            return self._names[class_id]
        return UNKNOWN_LABEL


def parse_metadata_names(raw: Union[str, Mapping, Sequence, None]) -> Tuple[str, ...]:
    """
    Parse the class-name entry embedded in exported model metadata.

    Ultralytics writes names as the repr of a dict such as
    "{0: 'person', 1: 'bicycle'}". Lists and already-parsed mappings are
    accepted too.

    Args:
        raw: Metadata value

    Returns:
        Names ordered by class id, or an empty tuple if nothing usable
    """
    if raw is None:
        return ()

    value = raw
    if isinstance(raw, str):
        try:
            value = ast.literal_eval(raw)
        except (ValueError, SyntaxError):
            logger.warning("Could not parse class names from model metadata")
            return ()

    if isinstance(value, Mapping):
        try:
            ordered = sorted(value.items(), key=lambda item: int(item[0]))
        except (TypeError, ValueError):
            return ()
        return tuple(str(name) for _, name in ordered)

    if isinstance(value, (list, tuple)):
        return tuple(str(name) for name in value)

    return ()


def read_label_file(label_path: Union[str, Path]) -> Tuple[str, ...]:
    """
    Read a label file with one class name per line.

    Args:
        label_path: Path to the label file

    Returns:
        Names in file order; blank lines are skipped

    Raises:
        FileNotFoundError: If the file doesn't exist
    """
    path = Path(label_path)
    if not path.exists():
        raise FileNotFoundError(f"Label file not found: {label_path}")

    with open(path, 'r', encoding='utf-8') as f:
        return tuple(line.strip() for line in f if line.strip())


def load_labels(
    metadata_names=None,
    label_path: Optional[Union[str, Path]] = None
) -> LabelSet:
    """
    Resolve the label set for a model.

    Args:
        metadata_names: Names entry from the model metadata (if any)
        label_path: Label file used when metadata carries no names

    Returns:
        LabelSet from metadata, label file, or COCO fallback
    """
    names = parse_metadata_names(metadata_names)
    if names:
        return LabelSet(names)

    if label_path is not None:
        return LabelSet(read_label_file(label_path))

    logger.warning("Model has no label metadata and no label file given; using COCO classes")
    return LabelSet(COCO_CLASSES)
