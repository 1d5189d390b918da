"""
Pipeline Configuration Module
=============================

Holds the tunable thresholds of the detection pipeline and the catalog of
available model variants. Supports JSON configuration files and a tiny
JSON-backed store for the selected model.

References:
- Ultralytics export formats: https://docs.ultralytics.com/modes/export/
"""

import json
import logging
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


DEFAULT_ALLOWED_CLASSES = (
    "car", "truck", "bus", "motorcycle", "motorbike",
    "bicycle", "train", "airplane", "boat", "ship",
)

# Average real-world object heights in meters
DEFAULT_CLASS_HEIGHTS = {
    "person": 1.7,
    "car": 1.5,
    "truck": 1.5,
    "bus": 1.5,
    "bottle": 0.5,
}

# Variant key -> (description, model file name)
MODEL_VARIANTS: Dict[str, Tuple[str, str]] = {
    "small": ("Small - Balanced Performance", "yolov10n_float16.onnx"),
    "medium": ("Medium - Faster & Accurate", "yolo11n_float16.onnx"),
    "large": ("Large - More Accurate & Slower", "yolov12n_float16.onnx"),
}
DEFAULT_MODEL_VARIANT = "small"


@dataclass
class PipelineConfig:
    """
    Tunable parameters of the detection pipeline.

    Attributes:
        confidence_threshold: Minimum score (exclusive) for a candidate box
        iou_threshold: IoU above which same-class boxes are suppressed
        allowed_classes: Class names kept by the class filter (case-insensitive)
        nms_on_per_box: Also run NMS on per-box layout outputs
        focal_length: Camera focal length in pixels used for distance
        fallback_distance: Distance reported for zero-height boxes (meters)
        default_object_height: Reference height for classes missing from class_heights
        class_heights: Reference real-world heights per class name (meters)
        use_frame_cache: Reuse the previous result for visually similar frames
        hash_threshold: Hash difference below which two frames count as similar
        cache_keep_on_empty: Keep the cached result when a new run finds nothing
        max_latency_samples: Latency history length of the skip controller
        min_latency_samples: Samples required before the skip factor changes
        adaptation_interval_ms: Minimum time between skip factor updates
        initial_frame_skip: Skip factor used before the first adaptation
        use_gpu: Request a GPU execution provider for inference
        model_path: Path to the ONNX model file
        labels_path: Optional label file used when the model has no metadata
    """
    confidence_threshold: float = 0.30
    iou_threshold: float = 0.45
    allowed_classes: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_CLASSES))
    nms_on_per_box: bool = False

    focal_length: float = 800.0
    fallback_distance: float = 10.0
    default_object_height: float = 1.0
    class_heights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_CLASS_HEIGHTS))

    use_frame_cache: bool = True
    hash_threshold: int = 150
    cache_keep_on_empty: bool = True

    max_latency_samples: int = 10
    min_latency_samples: int = 5
    adaptation_interval_ms: float = 2000.0
    initial_frame_skip: int = 2

    use_gpu: bool = False
    model_path: Optional[str] = None
    labels_path: Optional[str] = None

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ValueError: If a parameter is outside its valid range
        """
        if not 0.0 <= self.confidence_threshold < 1.0:
            raise ValueError("confidence_threshold must be in [0, 1)")
        if not 0.0 < self.iou_threshold <= 1.0:
            raise ValueError("iou_threshold must be in (0, 1]")
        if self.focal_length <= 0:
            raise ValueError("focal_length must be positive")
        if self.default_object_height <= 0:
            raise ValueError("default_object_height must be positive")
        for name, height in self.class_heights.items():
            if height <= 0:
                raise ValueError(f"class height for '{name}' must be positive")
        if self.hash_threshold < 0:
            raise ValueError("hash_threshold must be non-negative")
        if self.max_latency_samples < 1:
            raise ValueError("max_latency_samples must be at least 1")
        if not 1 <= self.min_latency_samples <= self.max_latency_samples:
            raise ValueError("min_latency_samples must be in [1, max_latency_samples]")
        if self.adaptation_interval_ms < 0:
            raise ValueError("adaptation_interval_ms must be non-negative")
        if self.initial_frame_skip < 0:
            raise ValueError("initial_frame_skip must be non-negative")


def create_default_config(**overrides) -> PipelineConfig:
    """
    Create a configuration with default values.

    Args:
        **overrides: Field values replacing the defaults

    Returns:
        Validated PipelineConfig

    Raises:
        ValueError: If an override names an unknown field or is out of range
    """
    known = {f.name for f in fields(PipelineConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")

    config = PipelineConfig(**overrides)
    config.validate()
    return config


def load_config_from_json(config_path: str) -> PipelineConfig:
    """
    Load pipeline configuration from a JSON file.

    Any subset of PipelineConfig fields may be given; missing fields keep
    their defaults.

    Args:
        config_path: Path to the JSON configuration file

    Returns:
        PipelineConfig with loaded parameters

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path, 'r') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("Configuration root must be a JSON object")

    if 'class_heights' in data:
        data['class_heights'] = {
            str(k).lower(): float(v) for k, v in data['class_heights'].items()
        }

    logger.debug("Loaded configuration from %s", path)
    return create_default_config(**data)


def save_config_to_json(config: PipelineConfig, output_path: str) -> None:
    """
    Save pipeline configuration to a JSON file.

    Args:
        config: PipelineConfig to save
        output_path: Path for the output JSON file
    """
    with open(output_path, 'w') as f:
        json.dump(asdict(config), f, indent=4)


class ModelPreferences:
    """
    Persists the selected model variant between runs.

    The store is a one-key JSON file. A missing or unreadable file falls
    back to the default (small) model.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def get_selected_variant(self) -> str:
        if not self.path.exists():
            return DEFAULT_MODEL_VARIANT
        try:
            with open(self.path, 'r') as f:
                variant = json.load(f).get("selected_model", DEFAULT_MODEL_VARIANT)
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Ignoring unreadable model preferences %s: %s", self.path, e)
            return DEFAULT_MODEL_VARIANT
        if variant not in MODEL_VARIANTS:
            return DEFAULT_MODEL_VARIANT
        return variant

    def save_selected_variant(self, variant: str) -> None:
        if variant not in MODEL_VARIANTS:
            raise ValueError(f"Unknown model variant: {variant}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump({"selected_model": variant}, f)

    def selected_model_file(self, model_dir: Path) -> Path:
        """Path of the selected variant's model file inside model_dir."""
        return Path(model_dir) / MODEL_VARIANTS[self.get_selected_variant()][1]
