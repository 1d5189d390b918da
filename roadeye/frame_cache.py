"""
Frame Similarity Cache Module
=============================

Skips the detector for frames that look like the last processed one.
Similarity is judged with a tiny average-hash: the frame is shrunk to
16x16, a sparse 4x4 grid of pixels is compared against its mean
luminance, and each comparison sets one bit.

References:
- Average hash: N. Krawetz, "Looks Like It," hackerfactor.com, 2011
- OpenCV resize: https://docs.opencv.org/4.x/da/d54/group__imgproc__transform.html
"""

import logging
from typing import List, Optional

import cv2
import numpy as np

from .object_detection import BoundingBox

logger = logging.getLogger(__name__)

HASH_SIZE = 16
HASH_STEP = 4
# The hash must fit a signed 32-bit register
MAX_HASH_BITS = 31
DEFAULT_HASH_THRESHOLD = 150


def compute_frame_hash(image: np.ndarray) -> int:
    """
    Compute the perceptual hash of a frame.

    Args:
        image: BGR (or BGRA) color image, or single-channel grayscale

    Returns:
        Non-negative hash that fits in 31 bits
    """
    small = cv2.resize(image, (HASH_SIZE, HASH_SIZE), interpolation=cv2.INTER_LINEAR)
    if small.ndim == 2:
        small = np.repeat(small[:, :, None], 3, axis=2)

    # Sample every 4th column (outer) and row (inner)
    samples = [
        small[y, x, :3].astype(np.int64)
        for x in range(0, HASH_SIZE, HASH_STEP)
        for y in range(0, HASH_SIZE, HASH_STEP)
    ]

    count = len(samples)
    channel_means = [sum(int(s[c]) for s in samples) // count for c in range(3)]
    mean_luma = sum(channel_means) // 3

    frame_hash = 0
    for bit, pixel in enumerate(samples):
        if bit >= MAX_HASH_BITS:
            break
        if int(pixel.sum()) // 3 > mean_luma:
            frame_hash |= 1 << bit

    return frame_hash


class FrameCache:
    """
    Holds the hash and detections of the last fully processed frame.

    A lookup hits when the new hash differs from the cached one by less
    than the threshold and the cached result is non-empty.

    With keep_on_empty set, an empty detection result never replaces a
    non-empty cached one.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_HASH_THRESHOLD,
        keep_on_empty: bool = True
    ):
        self.threshold = threshold
        self.keep_on_empty = keep_on_empty
        self.last_hash = 0
        self.last_results: List[BoundingBox] = []
        self.hits = 0
        self.misses = 0

    def lookup(self, frame_hash: int) -> Optional[List[BoundingBox]]:
        """
        Return the cached detections if the frame is similar enough.

        Args:
            frame_hash: Hash of the incoming frame

        Returns:
            Copy of the cached detections, or None on a miss
        """
        difference = abs(frame_hash - self.last_hash)
        if difference < self.threshold and self.last_results:
            self.hits += 1
            logger.debug("Cache hit (hash diff %d, hits %d, misses %d)",
                         difference, self.hits, self.misses)
            return list(self.last_results)

        self.misses += 1
        return None

    def update(self, frame_hash: int, results: List[BoundingBox]) -> None:
        """Store the result of a full detection pass."""
        if not results and self.keep_on_empty:
            return
        self.last_hash = frame_hash
        self.last_results = list(results)

    def reset(self) -> None:
        """Forget the cached frame and statistics."""
        self.last_hash = 0
        self.last_results = []
        self.hits = 0
        self.misses = 0

    @property
    def lookups(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Percentage of lookups served from the cache."""
        if self.lookups == 0:
            return 0.0
        return self.hits * 100.0 / self.lookups
