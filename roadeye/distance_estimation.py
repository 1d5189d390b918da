"""
Monocular Distance Estimation Module
====================================

Estimates how far a detected object is from the camera using its apparent
height and a reference real-world height for its class.

Using similar triangles of the pinhole model:
    distance = (real_height * focal_length) / pixel_height

The focal length can be calibrated from an object of known height placed
at a known distance:
    focal_length = (pixel_height * known_distance) / real_height

References:
- Pinhole camera model: https://en.wikipedia.org/wiki/Pinhole_camera_model
- Triangle similarity for distance: https://pyimagesearch.com/2015/01/19/find-distance-camera-objectmarker-using-python-opencv/
"""

import logging
from typing import Dict, List, Mapping, Optional

from .config import DEFAULT_CLASS_HEIGHTS
from .object_detection import BoundingBox

logger = logging.getLogger(__name__)

DEFAULT_FOCAL_LENGTH = 800.0
DEFAULT_OBJECT_HEIGHT = 1.0
FALLBACK_DISTANCE = 10.0


class ClassHeightTable:
    """
    Reference object heights in meters, looked up case-insensitively.
    """

    def __init__(
        self,
        heights: Optional[Mapping[str, float]] = None,
        default_height: float = DEFAULT_OBJECT_HEIGHT
    ):
        source = DEFAULT_CLASS_HEIGHTS if heights is None else heights
        self._heights: Dict[str, float] = {k.lower(): float(v) for k, v in source.items()}
        self.default_height = default_height

    def height_for(self, class_name: str) -> float:
        return self._heights.get(class_name.lower(), self.default_height)


class DistanceEstimator:
    """
    Maps a box's pixel height and class to a distance in meters.

    The focal length is mutable calibration state; everything else is fixed
    at construction.
    """

    def __init__(
        self,
        focal_length: float = DEFAULT_FOCAL_LENGTH,
        height_table: Optional[ClassHeightTable] = None,
        fallback_distance: float = FALLBACK_DISTANCE
    ):
        self.focal_length = focal_length
        self.height_table = height_table or ClassHeightTable()
        self.fallback_distance = fallback_distance

    def calibrate(
        self,
        object_pixel_height: float,
        object_real_height: float,
        known_distance: float
    ) -> float:
        """
        Calibrate the focal length from a reference observation.

        Args:
            object_pixel_height: Apparent height of the reference object in pixels
            object_real_height: Real height of the reference object in meters (> 0)
            known_distance: Distance to the reference object in meters

        Returns:
            The new focal length in pixels
        """
        self.focal_length = (object_pixel_height * known_distance) / object_real_height
        logger.info("Focal length calibrated to %.1f px", self.focal_length)
        return self.focal_length

    def estimate(
        self,
        box: BoundingBox,
        image_height: int,
        class_name: Optional[str] = None
    ) -> float:
        """
        Estimate distance to a detected object.

        Args:
            box: Detection in normalized coordinates
            image_height: Height of the source image in pixels
            class_name: Class used for the reference height (defaults to box label)

        Returns:
            Distance in meters, or the fallback distance for zero-height boxes
        """
        pixel_height = (box.y2 - box.y1) * image_height
        if pixel_height <= 0:
            return self.fallback_distance

        name = box.class_name if class_name is None else class_name
        real_height = self.height_table.height_for(name)
        return (real_height * self.focal_length) / pixel_height

    def annotate(self, boxes: List[BoundingBox], image_height: int) -> List[BoundingBox]:
        """
        Append a distance to each box label, e.g. "car 12.34m".

        Args:
            boxes: Detections with plain class names
            image_height: Height of the source image in pixels

        Returns:
            New boxes with annotated labels
        """
        annotated = []
        for box in boxes:
            distance = self.estimate(box, image_height, box.class_name)
            annotated.append(box.with_label(format_distance_label(box.class_name, distance)))
        return annotated


def format_distance_label(class_name: str, distance: float) -> str:
    return f"{class_name} {distance:.2f}m"
