"""
ONNX Inference Module
=====================

Runs an exported YOLO detector with ONNX Runtime and hands back the raw
output buffer for post-processing. The pipeline never calls the runtime
directly; this wrapper is the inference collaborator it is fed from.

References:
- ONNX Runtime Python API: https://onnxruntime.ai/docs/api/python/api_summary.html
- Execution providers: https://onnxruntime.ai/docs/execution-providers/
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np
import onnxruntime as ort

from .object_detection import OutputSpec, resolve_output_spec

logger = logging.getLogger(__name__)

DEFAULT_INPUT_SIZE = 640
GPU_PROVIDER = "CUDAExecutionProvider"
CPU_PROVIDER = "CPUExecutionProvider"


def select_providers(use_gpu: bool) -> List[str]:
    """
    Pick execution providers, falling back to CPU if no GPU provider exists.
    """
    if use_gpu:
        if GPU_PROVIDER in ort.get_available_providers():
            logger.info("Using GPU acceleration for inference")
            return [GPU_PROVIDER, CPU_PROVIDER]
        logger.warning("GPU acceleration is not supported; using CPU")
    return [CPU_PROVIDER]


def _static_dim(value, default: int) -> int:
    return int(value) if isinstance(value, (int, np.integer)) and value > 0 else default


class OnnxModel:
    """
    Thin wrapper around an ONNX Runtime session for a YOLO detector.

    Handles preprocessing (resize, RGB, [0, 1] scaling, NCHW/NHWC) and
    rescales pixel box coordinates to the normalized [0, 1] range the
    post-processing expects.
    """

    def __init__(
        self,
        model_path: Union[str, Path],
        use_gpu: bool = False,
        pixel_coordinates: bool = True
    ):
        """
        Load the model.

        Args:
            model_path: Path to the .onnx file
            use_gpu: Request the CUDA execution provider
            pixel_coordinates: Model emits boxes in input-pixel units

        Raises:
            FileNotFoundError: If the model file doesn't exist
        """
        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise FileNotFoundError(f"Model file not found: {model_path}")

        self.pixel_coordinates = pixel_coordinates
        self.session: Optional[ort.InferenceSession] = None
        self._load(use_gpu)

    def _load(self, use_gpu: bool) -> None:
        self.use_gpu = use_gpu
        self.session = ort.InferenceSession(
            str(self.model_path),
            providers=select_providers(use_gpu)
        )

        model_input = self.session.get_inputs()[0]
        self.input_name = model_input.name
        shape = list(model_input.shape)

        # Input shape is [1, 3, H, W] or [1, H, W, 3]
        self.channels_first = len(shape) == 4 and shape[1] == 3
        if self.channels_first:
            self.input_height = _static_dim(shape[2], DEFAULT_INPUT_SIZE)
            self.input_width = _static_dim(shape[3], DEFAULT_INPUT_SIZE)
        else:
            self.input_height = _static_dim(shape[1] if len(shape) > 1 else None, DEFAULT_INPUT_SIZE)
            self.input_width = _static_dim(shape[2] if len(shape) > 2 else None, DEFAULT_INPUT_SIZE)

        self.output_shape = list(self.session.get_outputs()[0].shape)
        self.output_spec: Optional[OutputSpec] = resolve_output_spec(self.output_shape)

        logger.info("Loaded %s: input %dx%d, output shape %s",
                    self.model_path.name, self.input_width, self.input_height, self.output_shape)

    @property
    def input_size(self) -> Tuple[int, int]:
        """Input tensor size as (width, height)."""
        return (self.input_width, self.input_height)

    def label_metadata(self) -> Optional[str]:
        """Raw class-name entry from the model's custom metadata, if any."""
        metadata = self.session.get_modelmeta().custom_metadata_map
        return metadata.get("names")

    def preprocess(self, image: np.ndarray) -> np.ndarray:
        """
        Convert a BGR frame into the model's input tensor.

        Args:
            image: BGR image of any size

        Returns:
            Float32 tensor with a batch dimension
        """
        resized = cv2.resize(image, self.input_size)
        tensor = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB).astype(np.float32) / 255.0
        if self.channels_first:
            tensor = np.transpose(tensor, (2, 0, 1))  # HWC to CHW
        return np.expand_dims(tensor, axis=0)

    def run_tensor(self, tensor: np.ndarray) -> np.ndarray:
        """
        Run the session on a preprocessed tensor.

        Returns:
            Flat float32 output buffer with normalized box coordinates
        """
        outputs = self.session.run(None, {self.input_name: tensor})
        output = np.asarray(outputs[0], dtype=np.float32)
        if self.pixel_coordinates and self.output_spec is not None:
            output = self._normalize_coordinates(output, self.output_spec)
        return output.reshape(-1)

    def _normalize_coordinates(self, output: np.ndarray, spec: OutputSpec) -> np.ndarray:
        if spec.is_per_channel:
            data = output.reshape(spec.num_channel, spec.num_elements).copy()
            data[[0, 2], :] /= self.input_width
            data[[1, 3], :] /= self.input_height
        else:
            data = output.reshape(spec.num_elements, spec.num_channel).copy()
            data[:, [0, 2]] /= self.input_width
            data[:, [1, 3]] /= self.input_height
        return data

    def restart(self, use_gpu: bool) -> None:
        """Release the current session and load a new one."""
        self.close()
        self._load(use_gpu)

    def close(self) -> None:
        self.session = None
