"""
Adaptive Frame Skipping Module
==============================

Tunes how many camera frames are dropped between detector runs based on
recent end-to-end latency. A skip factor k means one frame out of every
k + 1 is processed.

The controller only publishes the skip factor; FrameGate is the
frame-acceptance check a capture loop consults for each incoming frame.
"""

import logging
import time
from collections import deque
from typing import Callable, Deque, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

MAX_LATENCY_SAMPLES = 10
MIN_LATENCY_SAMPLES = 5
ADAPTATION_INTERVAL_MS = 2000.0
INITIAL_FRAME_SKIP = 2

# (mean latency above which the factor applies in ms, skip factor), slowest first
SKIP_THRESHOLDS: Tuple[Tuple[float, int], ...] = (
    (200.0, 3),
    (150.0, 2),
    (80.0, 1),
)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def skip_factor_for_latency(
    mean_latency_ms: float,
    thresholds: Sequence[Tuple[float, int]] = SKIP_THRESHOLDS
) -> int:
    """Map a mean processing latency to a skip factor."""
    for limit, factor in thresholds:
        if mean_latency_ms > limit:
            return factor
    return 0


def describe_frame_rate(skip_factor: int) -> str:
    """Short frame-rate mode label: "Max", "1/2", "1/3", ..."""
    if skip_factor <= 0:
        return "Max"
    return f"1/{skip_factor + 1}"


class FrameSkipController:
    """
    Latency-driven skip factor controller.

    Every observation goes into a bounded history. The skip factor is
    re-evaluated at most once per adaptation interval, and only changes
    once enough samples have been collected.

    Not thread-safe: observe() must be called from the pipeline worker.
    """

    def __init__(
        self,
        max_samples: int = MAX_LATENCY_SAMPLES,
        min_samples: int = MIN_LATENCY_SAMPLES,
        adaptation_interval_ms: float = ADAPTATION_INTERVAL_MS,
        initial_skip: int = INITIAL_FRAME_SKIP,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize the controller.

        Args:
            max_samples: Latency history length
            min_samples: Samples needed before the factor changes
            adaptation_interval_ms: Minimum time between evaluations
            initial_skip: Skip factor before the first adaptation
            clock: Millisecond clock, monotonic by default
        """
        self.max_samples = max_samples
        self.min_samples = min_samples
        self.adaptation_interval_ms = adaptation_interval_ms
        self.initial_skip = initial_skip
        self._clock = clock or _monotonic_ms

        self.skip_factor = initial_skip
        self.latencies_ms: Deque[float] = deque(maxlen=max_samples)
        self.last_adaptation_ms: Optional[float] = None

    def observe(self, latency_ms: float) -> int:
        """
        Record one frame's processing latency.

        Args:
            latency_ms: Total processing time of the frame

        Returns:
            The current skip factor
        """
        self.latencies_ms.append(float(latency_ms))

        now = self._clock()
        if (self.last_adaptation_ms is not None
                and now - self.last_adaptation_ms < self.adaptation_interval_ms):
            return self.skip_factor
        self.last_adaptation_ms = now

        if len(self.latencies_ms) >= self.min_samples:
            # Whole milliseconds, truncated
            mean_latency = int(sum(self.latencies_ms) / len(self.latencies_ms))
            new_skip = skip_factor_for_latency(mean_latency)
            if new_skip != self.skip_factor:
                logger.info("Adaptive frame skip adjusted to %d (avg processing time %d ms, %s FPS)",
                            new_skip, mean_latency, describe_frame_rate(new_skip))
                self.skip_factor = new_skip

        return self.skip_factor

    @property
    def mean_latency_ms(self) -> Optional[float]:
        if not self.latencies_ms:
            return None
        return sum(self.latencies_ms) / len(self.latencies_ms)

    def reset(self) -> None:
        self.skip_factor = self.initial_skip
        self.latencies_ms.clear()
        self.last_adaptation_ms = None


class FrameGate:
    """
    Accepts one frame out of every skip_factor + 1.

    The counter increments on every offered frame, accepted or not.
    """

    def __init__(self, controller: FrameSkipController):
        self.controller = controller
        self.counter = 0

    def accept(self) -> bool:
        accepted = self.counter % (self.controller.skip_factor + 1) == 0
        self.counter += 1
        return accepted

    def reset(self) -> None:
        self.counter = 0
