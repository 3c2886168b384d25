"""RetinaFace detection producing DetectedFace records with pose and tracking ids."""

from __future__ import annotations

import logging
import math
import os
import platform
from typing import Dict, List, Optional, Tuple

import numpy as np

from facegate.tracking.iou_tracker import IouFaceTracker
from facegate.types import DetectedFace, Point, landmarks_from_array

LOGGER = logging.getLogger("facegate.detectors.face")


def _default_providers() -> Tuple[str, ...]:
    """Choose default ONNX providers for RetinaFace."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in {"arm64", "aarch64"}:
        return ("CoreMLExecutionProvider", "CPUExecutionProvider")
    return ("CPUExecutionProvider",)


def estimate_pose(landmarks: Dict[str, Point], max_yaw: float = 90.0) -> Tuple[float, float]:
    """Approximate (yaw, roll) in degrees from five-point landmarks.

    Yaw comes from the horizontal asymmetry of the nose between the eyes,
    roll from the angle of the eye line. Missing eyes give (0, 0).
    """
    left = landmarks.get("left_eye")
    right = landmarks.get("right_eye")
    if left is None or right is None:
        return 0.0, 0.0
    roll = math.degrees(math.atan2(right[1] - left[1], right[0] - left[0]))
    nose = landmarks.get("nose")
    if nose is None:
        return 0.0, roll
    dist_left = nose[0] - left[0]
    dist_right = right[0] - nose[0]
    denom = max(abs(dist_left) + abs(dist_right), 1e-6)
    asymmetry = (dist_left - dist_right) / denom
    yaw = float(np.clip(asymmetry, -1.0, 1.0)) * max_yaw
    return yaw, roll


class RetinaFaceDetector:
    """Wrapper around InsightFace RetinaFace implementing ``detect(frame)``."""

    def __init__(
        self,
        providers: Optional[Tuple[str, ...]] = None,
        det_size: Tuple[int, int] = (640, 640),
        det_thresh: float = 0.5,
        min_face_frac: float = 0.1,
        tracker: Optional[IouFaceTracker] = None,
    ) -> None:
        os.environ.setdefault("OMP_NUM_THREADS", "2")
        os.environ.setdefault("MKL_NUM_THREADS", "2")
        os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", "2")
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:  # pragma: no cover - import guard
            raise RuntimeError(
                "insightface is required for RetinaFaceDetector. "
                "Install it via `pip install insightface`."
            ) from exc

        self.det_size = det_size
        self.det_thresh = det_thresh
        self.min_face_frac = min_face_frac
        provider_list: Tuple[str, ...]
        if providers is None:
            provider_list = _default_providers()
        else:
            provider_list = tuple(providers)
        self.providers = provider_list
        self.tracker = tracker if tracker is not None else IouFaceTracker()
        self.app = FaceAnalysis(name="buffalo_l", allowed_modules=["detection"], providers=list(provider_list))
        self.app.prepare(ctx_id=0, det_size=self.det_size)
        LOGGER.info(
            "Loaded RetinaFace detector det_size=%s det_thresh=%.2f providers=%s",
            det_size,
            det_thresh,
            provider_list,
        )

    def detect(self, frame: np.ndarray) -> List[DetectedFace]:
        """Run RetinaFace on a BGR frame and return faces in detector order."""
        height, width = frame.shape[:2]
        min_side = self.min_face_frac * min(height, width)
        faces: List[DetectedFace] = []
        for face in self.app.get(frame):
            score = float(face.det_score)
            if score < self.det_thresh:
                continue
            bbox = tuple(float(v) for v in face.bbox)
            if min(bbox[2] - bbox[0], bbox[3] - bbox[1]) < min_side:
                continue
            landmarks = landmarks_from_array(getattr(face, "kps", None))
            yaw, roll = estimate_pose(landmarks)
            faces.append(
                DetectedFace(
                    bbox=bbox,  # type: ignore[arg-type]
                    landmarks=landmarks,
                    yaw=yaw,
                    roll=roll,
                    score=score,
                    metadata={"landmark_count": len(landmarks)},
                )
            )
        for face, track_id in zip(faces, self.tracker.assign([f.bbox for f in faces])):
            face.tracking_id = track_id
        return faces

    def close(self) -> None:
        self.tracker.reset()
        self.app = None
