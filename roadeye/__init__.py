"""
Road Object Detection and Distance Estimation
=============================================

Real-time vehicle detection post-processing for single-camera devices.
Decodes raw detector output tensors into filtered, de-duplicated boxes,
annotates each box with a monocular distance estimate, and keeps frame
rate in check with a frame-similarity cache and adaptive frame skipping.

References:
- YOLOv8 / YOLOv10 output format: https://docs.ultralytics.com/
- ONNX Runtime: https://onnxruntime.ai/docs/
- Pinhole camera model: https://en.wikipedia.org/wiki/Pinhole_camera_model
"""

__version__ = "1.0.0"
