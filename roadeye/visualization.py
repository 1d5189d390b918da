"""
Overlay Visualization Module
============================

Draws detections and pipeline status on camera frames with OpenCV.

References:
- OpenCV drawing functions: https://docs.opencv.org/4.x/dc/da5/tutorial_py_drawing_functions.html
"""

from typing import List, Optional, Tuple

import cv2
import numpy as np

from .frame_skip import describe_frame_rate
from .object_detection import BoundingBox

BOX_COLOR = (255, 0, 0)
TEXT_COLOR = (255, 255, 255)
TEXT_PADDING = 8


def box_to_pixels(box: BoundingBox, width: int, height: int) -> Tuple[int, int, int, int]:
    """Scale a normalized box to integer pixel corners clamped to the image."""
    x1 = int(np.clip(box.x1 * width, 0, width - 1))
    y1 = int(np.clip(box.y1 * height, 0, height - 1))
    x2 = int(np.clip(box.x2 * width, 0, width - 1))
    y2 = int(np.clip(box.y2 * height, 0, height - 1))
    return x1, y1, x2, y2


def draw_detections(
    image: np.ndarray,
    boxes: List[BoundingBox],
    color: Tuple[int, int, int] = BOX_COLOR,
    show_confidence: bool = True
) -> np.ndarray:
    """
    Draw detection boxes and labels on an image.

    Args:
        image: Input image (will be copied)
        boxes: Detections in normalized coordinates
        color: Box color (BGR)
        show_confidence: Append the rounded confidence to each label

    Returns:
        Image with drawn detections
    """
    output = image.copy()
    height, width = output.shape[:2]

    for box in boxes:
        x1, y1, x2, y2 = box_to_pixels(box, width, height)
        cv2.rectangle(output, (x1, y1), (x2, y2), color, 2)

        label = box.class_name
        if show_confidence:
            label = f"{label} {round(box.confidence, 2)}"

        # Label background sits inside the box's top-left corner
        (text_w, text_h), baseline = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, 0.5, 1)
        cv2.rectangle(
            output,
            (x1, y1),
            (x1 + text_w + TEXT_PADDING, y1 + text_h + baseline + TEXT_PADDING),
            color, -1
        )
        cv2.putText(
            output, label,
            (x1 + TEXT_PADDING // 2, y1 + text_h + TEXT_PADDING // 2),
            cv2.FONT_HERSHEY_SIMPLEX, 0.5,
            TEXT_COLOR, 1
        )

    return output


def draw_status(
    image: np.ndarray,
    latency_ms: Optional[float],
    skip_factor: int,
    from_cache: bool = False
) -> np.ndarray:
    """
    Write the latency and frame-rate mode in the top-left corner.

    Args:
        image: Input image (drawn in place)
        latency_ms: Last processing time, None when nothing was detected
        skip_factor: Current frame-skip factor
        from_cache: Mark results reused from the frame cache

    Returns:
        The same image
    """
    if latency_ms is None:
        text = "No objects detected"
    else:
        text = f"Latency: {latency_ms:.0f} ms (FPS: {describe_frame_rate(skip_factor)})"
        if from_cache:
            text += " [cached]"

    cv2.putText(image, text, (10, 25), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 0, 0), 3)
    cv2.putText(image, text, (10, 25), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 0), 1)
    return image
