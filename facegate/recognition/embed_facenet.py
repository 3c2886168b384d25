"""FaceNet (128-d) embedding extraction through ONNX Runtime."""

from __future__ import annotations

import logging
import os
import platform
from pathlib import Path
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from facegate.types import EMBEDDING_DIM, DetectedFace, l2_normalize

LOGGER = logging.getLogger("facegate.recognition.embed")


def _default_providers() -> Tuple[str, ...]:
    """Choose default ONNX providers based on platform."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in {"arm64", "aarch64"}:
        return ("CoreMLExecutionProvider", "CPUExecutionProvider")
    return ("CPUExecutionProvider",)


def crop_face(image: np.ndarray, face: DetectedFace, margin: float = 0.1) -> np.ndarray:
    """Crop the face box (expanded by ``margin``) clipped to the image."""
    height, width = image.shape[:2]
    x1, y1, x2, y2 = face.bbox
    dx = (x2 - x1) * margin
    dy = (y2 - y1) * margin
    left = int(max(0, np.floor(x1 - dx)))
    top = int(max(0, np.floor(y1 - dy)))
    right = int(min(width, np.ceil(x2 + dx)))
    bottom = int(min(height, np.ceil(y2 + dy)))
    if right <= left or bottom <= top:
        raise ValueError(f"Face box {face.bbox} lies outside a {width}x{height} image")
    return image[top:bottom, left:right]


class FaceNetEmbedder:
    """Loads a FaceNet ONNX model and maps a detected face to a unit 128-d vector."""

    def __init__(
        self,
        model_path: str,
        providers: Optional[Sequence[str]] = None,
        input_size: int = 160,
    ) -> None:
        os.environ.setdefault("OMP_NUM_THREADS", "2")
        os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", "2")
        try:
            import onnxruntime as ort
        except ImportError as exc:  # pragma: no cover - import guard
            raise RuntimeError(
                "onnxruntime is required for FaceNetEmbedder. "
                "Install it via `pip install onnxruntime`."
            ) from exc

        resolved = Path(model_path).expanduser()
        if not resolved.exists():
            raise FileNotFoundError(f"FaceNet model not found: {resolved}")
        provider_list: Tuple[str, ...]
        if providers is None:
            provider_list = _default_providers()
        else:
            provider_list = tuple(providers)
        available = set(ort.get_available_providers())
        usable = [p for p in provider_list if p in available] or ["CPUExecutionProvider"]
        LOGGER.info("Loading FaceNet model %s providers=%s", resolved, usable)
        self.session = ort.InferenceSession(str(resolved), providers=usable)
        model_input = self.session.get_inputs()[0]
        self.input_name = model_input.name
        shape = list(model_input.shape)
        # NCHW exports carry the channel axis at position 1
        self.channels_first = len(shape) == 4 and shape[1] == 3
        self.input_size = input_size
        self.providers = tuple(self.session.get_providers())

    def preprocess(self, crop: np.ndarray) -> np.ndarray:
        if crop.ndim == 2:
            crop = cv2.cvtColor(crop, cv2.COLOR_GRAY2RGB)
        else:
            crop = cv2.cvtColor(crop, cv2.COLOR_BGR2RGB)
        resized = cv2.resize(crop, (self.input_size, self.input_size), interpolation=cv2.INTER_LINEAR)
        blob = (resized.astype(np.float32) - 127.5) / 128.0
        if self.channels_first:
            blob = blob.transpose(2, 0, 1)
        return blob[None, ...]

    def embed(self, image: np.ndarray, face: DetectedFace) -> np.ndarray:
        """Compute an L2-normalized embedding for ``face`` inside ``image`` (BGR)."""
        blob = self.preprocess(crop_face(image, face))
        output = self.session.run(None, {self.input_name: blob})[0]
        vector = np.asarray(output, dtype=np.float64).reshape(-1)
        if vector.shape[0] != EMBEDDING_DIM:
            raise RuntimeError(
                f"FaceNet model produced {vector.shape[0]}-d output, expected {EMBEDDING_DIM}"
            )
        return l2_normalize(vector)
