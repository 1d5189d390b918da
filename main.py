#!/usr/bin/env python3
"""
Road Object Detection - Main Entry Point
========================================

Real-time vehicle detection with monocular distance estimates, adaptive
frame skipping and a frame-similarity cache.

Usage:
    python main.py --webcam 0 --variant small
    python main.py --video drive.mp4 --model models/yolo11n_float16.onnx
    python main.py --image street.jpg --model models/yolov10n_float16.onnx --no-display

References:
- OpenCV Python Tutorials: https://docs.opencv.org/4.x/d6/d00/tutorial_py_root.html
- ONNX Runtime: https://onnxruntime.ai/docs/
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import cv2

from roadeye.config import (
    MODEL_VARIANTS,
    ModelPreferences,
    PipelineConfig,
    create_default_config,
    load_config_from_json,
)
from roadeye.frame_skip import describe_frame_rate
from roadeye.inference import OnnxModel
from roadeye.labels import load_labels
from roadeye.pipeline import DetectionPipeline, DetectionResult
from roadeye.visualization import draw_detections, draw_status

DEFAULT_MODEL_DIR = Path(__file__).parent / "models"
DEFAULT_PREFERENCES_PATH = Path.home() / ".roadeye" / "preferences.json"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Real-time Vehicle Detection with Distance Estimation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Live camera with the persisted model variant
    python main.py --webcam 0

    # Pick and remember the large model
    python main.py --webcam 0 --variant large

    # Calibrate focal length with a 1.5 m car, 300 px tall, 4 m away
    python main.py --video drive.mp4 --calibrate 300 1.5 4.0
        """,
    )

    # Input sources
    input_group = parser.add_mutually_exclusive_group(required=True)
    input_group.add_argument("--webcam", type=int, metavar="INDEX", help="Webcam index")
    input_group.add_argument("--video", type=str, help="Path to a video file")
    input_group.add_argument("--image", type=str, help="Path to a single image")

    # Model
    model_group = parser.add_mutually_exclusive_group()
    model_group.add_argument("--model", type=str, help="Path to an ONNX model file")
    model_group.add_argument(
        "--variant",
        choices=sorted(MODEL_VARIANTS),
        help="Model variant from the models/ directory (remembered for next run)",
    )
    parser.add_argument(
        "--model-dir", type=str, default=str(DEFAULT_MODEL_DIR),
        help="Directory holding the model variants (default: models/)",
    )
    parser.add_argument("--labels", type=str, help="Label file (one class per line)")
    parser.add_argument("--gpu", action="store_true", help="Use the CUDA execution provider")

    # Pipeline
    parser.add_argument("--config", type=str, help="Path to a pipeline configuration JSON file")
    parser.add_argument(
        "--classes", type=str,
        help="Comma-separated class allow-list (default: vehicle classes)",
    )
    parser.add_argument("--no-cache", action="store_true", help="Disable the frame similarity cache")
    parser.add_argument(
        "--calibrate", nargs=3, type=float, metavar=("PIXEL_HEIGHT", "REAL_HEIGHT", "DISTANCE"),
        help="Calibrate focal length from a reference object",
    )

    # Output
    parser.add_argument("--output", type=str, help="Output directory for saved frames")
    parser.add_argument("--no-display", action="store_true", help="Run without display")
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def setup_config(args) -> PipelineConfig:
    """Load or create the pipeline configuration."""
    if args.config:
        print(f"Loading configuration from: {args.config}")
        config = load_config_from_json(args.config)
    else:
        config = create_default_config()

    if args.classes:
        config.allowed_classes = [c.strip() for c in args.classes.split(",") if c.strip()]
    if args.no_cache:
        config.use_frame_cache = False
    if args.gpu:
        config.use_gpu = True
    if args.labels:
        config.labels_path = args.labels
    return config


def resolve_model_path(args, config: PipelineConfig) -> Path:
    """Pick the model file from --model, --variant, config or preferences."""
    if args.model:
        return Path(args.model)

    preferences = ModelPreferences(DEFAULT_PREFERENCES_PATH)
    if args.variant:
        preferences.save_selected_variant(args.variant)
    elif config.model_path:
        return Path(config.model_path)

    variant = preferences.get_selected_variant()
    print(f"Model variant: {MODEL_VARIANTS[variant][0]}")
    return preferences.selected_model_file(Path(args.model_dir))


def setup_pipeline(args, config: PipelineConfig):
    """Load the model and build a ready pipeline around it."""
    model_path = resolve_model_path(args, config)
    model = OnnxModel(model_path, use_gpu=config.use_gpu)
    labels = load_labels(model.label_metadata(), config.labels_path)

    pipeline = DetectionPipeline(config, notify=lambda msg: print(f"[pipeline] {msg}"))
    if pipeline.initialize(model.output_shape, labels) is None:
        print(f"Error: Unsupported model output shape {model.output_shape}")
        sys.exit(1)

    if args.calibrate:
        pixel_height, real_height, distance = args.calibrate
        focal = pipeline.calibrate_focal_length(pixel_height, real_height, distance)
        print(f"Focal length calibrated: {focal:.1f} px")

    return model, pipeline


def render(frame, result: Optional[DetectionResult], pipeline: DetectionPipeline):
    """Overlay the latest result on a frame."""
    if result is None or result.is_empty:
        return draw_status(frame.copy(), None, pipeline.skip_factor)
    output = draw_detections(frame, result.boxes)
    return draw_status(output, result.total_ms, pipeline.skip_factor, result.from_cache)


def run_image(args, model: OnnxModel, pipeline: DetectionPipeline, output_dir: Optional[Path]) -> None:
    """Detect on a single still image."""
    image = cv2.imread(args.image)
    if image is None:
        print(f"Error: Could not read image: {args.image}")
        sys.exit(1)

    result = pipeline.process_frame(image, model)
    boxes = result.boxes if result is not None else []
    for box in boxes:
        print(f"  {box.class_name} (confidence {box.confidence:.2f})")
    if not boxes:
        print("No objects detected")

    annotated = render(image, result, pipeline)
    if output_dir:
        cv2.imwrite(str(output_dir / f"{Path(args.image).stem}_detections.png"), annotated)
    if not args.no_display:
        cv2.imshow("Detections", annotated)
        cv2.waitKey(0)
        cv2.destroyAllWindows()


def run_stream(args, model: OnnxModel, pipeline: DetectionPipeline, output_dir: Optional[Path]) -> None:
    """Process a webcam or video stream until it ends or the user quits."""
    source = args.webcam if args.webcam is not None else args.video
    cap = cv2.VideoCapture(source)
    if not cap.isOpened():
        print(f"Error: Could not open video source: {source}")
        sys.exit(1)

    # Keep only the latest frame queued
    cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

    print("Processing...")
    print("Controls:")
    print("  'q' - Quit")
    print("  'SPACE' - Pause/Resume")
    print("  'r' - Reset cache and frame skipping")
    print("  's' - Save frame")
    print()

    last_result: Optional[DetectionResult] = None
    last_skip = pipeline.skip_factor
    paused = False
    frame_idx = 0

    try:
        while True:
            if not paused:
                ok, frame = cap.read()
                if not ok:
                    break

                if pipeline.accept_frame():
                    result = pipeline.process_frame(frame, model)
                    if result is not None:
                        last_result = result
                        if result.error:
                            print(f"Model error: {result.error}")

                if pipeline.skip_factor != last_skip:
                    last_skip = pipeline.skip_factor
                    print(f"Performance adaptation: {describe_frame_rate(last_skip)} FPS mode")

                annotated = render(frame, last_result, pipeline)
                frame_idx += 1

            if args.no_display:
                continue

            cv2.imshow("Road Object Detection", annotated)
            key = cv2.waitKey(1) & 0xFF

            if key == ord("q"):
                print("\nQuitting...")
                break
            elif key == ord(" "):
                paused = not paused
                print("Paused (press SPACE to resume)" if paused else "Resumed")
            elif key == ord("r"):
                pipeline.reset()
                print("Pipeline state reset")
            elif key == ord("s") and output_dir:
                cv2.imwrite(str(output_dir / f"frame_{frame_idx:04d}.png"), annotated)
                print(f"Saved frame {frame_idx}")

    except KeyboardInterrupt:
        print("\nInterrupted by user")

    finally:
        pipeline.stop()
        cap.release()
        cv2.destroyAllWindows()

    cache = pipeline.frame_cache
    print(f"\nProcessed {frame_idx} frames")
    print(f"Cache hit rate: {cache.hit_rate:.1f}% ({cache.hits} hits, {cache.misses} misses)")


def main():
    """Main entry point."""
    args = parse_args()
    configure_logging(args.log_level)

    print("=" * 60)
    print("  Road Object Detection")
    print("=" * 60)
    print()

    try:
        config = setup_config(args)
        model, pipeline = setup_pipeline(args, config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    output_dir = None
    if args.output:
        output_dir = Path(args.output)
        output_dir.mkdir(parents=True, exist_ok=True)

    spec = pipeline.output_spec
    print(f"Output layout: {spec.layout.value} ({spec.num_elements} x {spec.num_channel})")
    print(f"Classes: {', '.join(config.allowed_classes)}")
    print(f"Focal length: {pipeline.distance_estimator.focal_length:.1f} px")
    print()

    try:
        if args.image:
            run_image(args, model, pipeline, output_dir)
        else:
            run_stream(args, model, pipeline, output_dir)
    finally:
        pipeline.close()
        model.close()

    print("Done!")


if __name__ == "__main__":
    main()
