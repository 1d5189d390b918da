"""
Detection Pipeline Module
=========================

One DetectionPipeline instance owns everything needed to turn frames from
a single model into annotated vehicle boxes:

    frame -> similarity cache -> inference -> decode -> class filter
          -> NMS -> distance annotation -> skip-controller feedback

The pipeline is single-threaded by contract. A host that runs detection
from several threads must serialize calls (one worker per pipeline).
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import PipelineConfig
from .distance_estimation import ClassHeightTable, DistanceEstimator
from .frame_cache import FrameCache, compute_frame_hash
from .frame_skip import FrameGate, FrameSkipController
from .labels import LabelSet
from .object_detection import (
    BoundingBox,
    OutputSpec,
    decode_output,
    filter_classes,
    non_max_suppression,
    resolve_output_spec,
)

logger = logging.getLogger(__name__)

# Processing time reported for frames served from the cache
CACHED_PROCESSING_MS = 1.0
CACHE_STATS_INTERVAL = 100


@dataclass
class TimingBreakdown:
    """Per-stage processing times in milliseconds (informational only)."""
    preprocess_ms: float = 0.0
    inference_ms: float = 0.0
    postprocess_ms: float = 0.0

    def as_dict(self) -> dict:
        return {
            "preprocessing": self.preprocess_ms,
            "inference": self.inference_ms,
            "postprocessing": self.postprocess_ms,
        }


@dataclass
class DetectionResult:
    """
    Outcome of one processed frame.

    Attributes:
        boxes: Detections with distance-annotated labels
        total_ms: End-to-end processing time
        timing: Per-stage breakdown (zeros for cached frames)
        from_cache: True if the previous result was reused
        error: Inference failure message, if the frame failed
    """
    boxes: List[BoundingBox]
    total_ms: float
    timing: TimingBreakdown = field(default_factory=TimingBreakdown)
    from_cache: bool = False
    error: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.boxes


def _perf_ms() -> float:
    return time.perf_counter() * 1000.0


class DetectionPipeline:
    """
    Post-processing pipeline for a single loaded detector.

    Lifetime: construct -> initialize() -> process_frame()* -> close().
    Call reset() (or restart()) when the model is reloaded; no frame may be
    in flight while that happens.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        notify: Optional[Callable[[str], None]] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Create the pipeline.

        Args:
            config: Thresholds and calibration, defaults if None
            notify: Receives user-facing messages (logged if None)
            clock: Millisecond clock for stage timing
        """
        self.config = config or PipelineConfig()
        self.notify = notify or logger.info
        self._clock = clock or _perf_ms

        self.labels: Optional[LabelSet] = None
        self.output_spec: Optional[OutputSpec] = None

        self.distance_estimator = DistanceEstimator(
            focal_length=self.config.focal_length,
            height_table=ClassHeightTable(
                self.config.class_heights, self.config.default_object_height
            ),
            fallback_distance=self.config.fallback_distance
        )
        self.frame_cache = FrameCache(
            threshold=self.config.hash_threshold,
            keep_on_empty=self.config.cache_keep_on_empty
        )
        self.skip_controller = FrameSkipController(
            max_samples=self.config.max_latency_samples,
            min_samples=self.config.min_latency_samples,
            adaptation_interval_ms=self.config.adaptation_interval_ms,
            initial_skip=self.config.initial_frame_skip
        )
        self.frame_gate = FrameGate(self.skip_controller)

        self._stopped = False

    # Setup

    def initialize(
        self,
        output_shape: Sequence,
        labels: Union[LabelSet, Sequence[str]]
    ) -> Optional[OutputSpec]:
        """
        Resolve the output layout from the model's output tensor shape.

        Args:
            output_shape: Output tensor shape, e.g. [1, 84, 8400] or [1, 300, 6]
            labels: Class names of the model

        Returns:
            Resolved OutputSpec, or None if the shape is unusable. The
            pipeline then stays not ready and ignores frames.
        """
        self.labels = labels if isinstance(labels, LabelSet) else LabelSet(labels)
        self.output_spec = resolve_output_spec(output_shape)

        if self.output_spec is None:
            shape = list(output_shape) if output_shape is not None else []
            self.notify(f"Unsupported model output shape {shape}")
            return None

        spec = self.output_spec
        logger.info("Output layout %s: %d elements x %d channels",
                    spec.layout.value, spec.num_elements, spec.num_channel)
        if spec.is_per_channel and spec.num_classes != len(self.labels):
            logger.warning("Model scores %d classes but %d labels are loaded",
                           spec.num_classes, len(self.labels))
        return spec

    @property
    def is_ready(self) -> bool:
        return self.output_spec is not None and self.labels is not None

    # Cancellation

    def stop(self) -> None:
        """Ask the pipeline to abandon in-progress and future frames."""
        self._stopped = True

    def resume(self) -> None:
        self._stopped = False

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    # Post-processing

    def decode(self, buffer) -> List[BoundingBox]:
        """
        Decode, class-filter and de-duplicate a raw output buffer.

        Args:
            buffer: Flat float output of the detector

        Returns:
            Vehicle boxes with plain class names
        """
        if not self.is_ready:
            return []

        spec = self.output_spec
        candidates = decode_output(buffer, spec, self.labels, self.config.confidence_threshold)
        boxes = filter_classes(candidates, self.config.allowed_classes)

        # Per-box outputs come from NMS-free heads
        if spec.is_per_channel or self.config.nms_on_per_box:
            boxes = non_max_suppression(boxes, self.config.iou_threshold)
        return boxes

    def decode_frame(
        self,
        buffer,
        image_height: int
    ) -> Tuple[List[BoundingBox], TimingBreakdown]:
        """
        Turn a raw output buffer into distance-annotated boxes.

        Args:
            buffer: Flat float output of the detector
            image_height: Height in pixels of the image the boxes refer to

        Returns:
            (annotated boxes, timing breakdown)
        """
        start = self._clock()
        boxes = self.distance_estimator.annotate(self.decode(buffer), image_height)
        return boxes, TimingBreakdown(postprocess_ms=self._clock() - start)

    def process_frame(
        self,
        image: np.ndarray,
        model,
        image_height: Optional[int] = None
    ) -> Optional[DetectionResult]:
        """
        Run the full pipeline on one camera frame.

        Args:
            image: BGR frame
            model: Inference collaborator with preprocess(image) -> tensor
                and run_tensor(tensor) -> flat output buffer
            image_height: Height used for distance estimation (defaults to
                the frame height)

        Returns:
            DetectionResult, or None if the pipeline is not ready or was
            stopped mid-frame
        """
        if not self.is_ready or self._stopped:
            return None

        height = image.shape[0] if image_height is None else image_height
        start = self._clock()

        frame_hash = None
        if self.config.use_frame_cache:
            frame_hash = compute_frame_hash(image)
            cached = self.frame_cache.lookup(frame_hash)
            if cached is not None:
                boxes = self.distance_estimator.annotate(cached, height)
                self.skip_controller.observe(CACHED_PROCESSING_MS)
                return DetectionResult(boxes=boxes, total_ms=CACHED_PROCESSING_MS, from_cache=True)

        timing = TimingBreakdown()
        try:
            stage_start = self._clock()
            tensor = model.preprocess(image)
            timing.preprocess_ms = self._clock() - stage_start
            if self._stopped:
                return None

            stage_start = self._clock()
            buffer = model.run_tensor(tensor)
            timing.inference_ms = self._clock() - stage_start
        except Exception as e:
            logger.exception("Inference failed")
            self.notify(f"Model error: {e}")
            return DetectionResult(boxes=[], total_ms=self._clock() - start,
                                   timing=timing, error=str(e))

        if self._stopped:
            return None

        stage_start = self._clock()
        boxes = self.decode(buffer)
        timing.postprocess_ms = self._clock() - stage_start

        if frame_hash is not None:
            self.frame_cache.update(frame_hash, boxes)
            self._log_cache_stats()

        annotated = self.distance_estimator.annotate(boxes, height)
        total_ms = self._clock() - start
        self.skip_controller.observe(total_ms)

        logger.debug("Times - Preprocess: %.1f ms, Inference: %.1f ms, Postprocess: %.1f ms, Total: %.1f ms",
                     timing.preprocess_ms, timing.inference_ms, timing.postprocess_ms, total_ms)
        return DetectionResult(boxes=annotated, total_ms=total_ms, timing=timing)

    def _log_cache_stats(self) -> None:
        cache = self.frame_cache
        if cache.lookups and cache.lookups % CACHE_STATS_INTERVAL == 0:
            logger.info("Cache stats: hit rate %.1f%% (hits %d, misses %d)",
                        cache.hit_rate, cache.hits, cache.misses)

    # Frame acceptance

    def accept_frame(self) -> bool:
        """Frame-rate gate for the capture loop, driven by the skip controller."""
        return self.frame_gate.accept()

    @property
    def skip_factor(self) -> int:
        return self.skip_controller.skip_factor

    # Calibration and lifecycle

    def calibrate_focal_length(
        self,
        pixel_height: float,
        real_height: float,
        known_distance: float
    ) -> float:
        """Calibrate the distance estimator; see DistanceEstimator.calibrate."""
        return self.distance_estimator.calibrate(pixel_height, real_height, known_distance)

    def reset(self) -> None:
        """Clear cache and skip-controller state."""
        self.frame_cache.reset()
        self.skip_controller.reset()
        self.frame_gate.reset()

    def restart(self, model, use_gpu: bool) -> None:
        """
        Reload the inference collaborator and reset pipeline state.

        The caller must make sure no process_frame() call is in flight.
        """
        model.restart(use_gpu)
        self.reset()
        self.notify(f"Model restarted on {'GPU' if use_gpu else 'CPU'}")

    def close(self) -> None:
        self.stop()
        self.reset()
        self.output_spec = None
