"""Presentation-attack scoring from five weak heuristics."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Mapping, Optional, Sequence

import cv2
import numpy as np

from facegate.config import DEFAULT_SPOOF_WEIGHTS, PipelineConfig
from facegate.types import (
    EXPECTED_LANDMARKS,
    DetectedFace,
    RiskLevel,
    SpoofVerdict,
    bbox_contains,
)

LOGGER = logging.getLogger("facegate.liveness.spoof")

NEUTRAL_SCORE = 0.5
SPOOF_COMPONENTS = ("texture", "landmarks", "frequency", "eye_reflection", "motion")


def combine_scores(components: Mapping[str, float], weights: Mapping[str, float] = DEFAULT_SPOOF_WEIGHTS) -> float:
    """Weighted mean over the components present; no usable weight gives 0.5."""
    weighted_sum = 0.0
    total_weight = 0.0
    for name, score in components.items():
        weight = float(weights.get(name, 0.0))
        weighted_sum += float(score) * weight
        total_weight += weight
    if total_weight <= 0:
        return NEUTRAL_SCORE
    return float(np.clip(weighted_sum / total_weight, 0.0, 1.0))


def to_gray(pixels, width: int, height: int) -> Optional[np.ndarray]:
    """Interpret ``pixels`` as a (height, width) uint8 gray image.

    Accepts a numpy image (gray, BGR or BGRA) or a bytes-like/sequence of
    ``width * height`` row-major gray values. Returns None when the buffer is
    too small to cover the frame.
    """
    if pixels is None:
        return None
    if isinstance(pixels, np.ndarray) and pixels.ndim == 3:
        if pixels.shape[2] == 4:
            return cv2.cvtColor(pixels.astype(np.uint8), cv2.COLOR_BGRA2GRAY)
        if pixels.shape[2] == 3:
            return cv2.cvtColor(pixels.astype(np.uint8), cv2.COLOR_BGR2GRAY)
        return pixels[:, :, 0].astype(np.uint8)
    if isinstance(pixels, np.ndarray) and pixels.ndim == 2:
        return pixels.astype(np.uint8)
    if isinstance(pixels, (bytes, bytearray, memoryview)):
        flat = np.frombuffer(pixels, dtype=np.uint8)
    else:
        flat = np.asarray(pixels).reshape(-1)
        # Signed byte buffers wrap to their unsigned value
        flat = (flat.astype(np.int64) & 0xFF).astype(np.uint8)
    if width <= 0 or height <= 0 or flat.size < width * height:
        return None
    return flat[: width * height].reshape(height, width)


def crop_region(gray: np.ndarray, face: DetectedFace) -> Optional[np.ndarray]:
    height, width = gray.shape[:2]
    x1, y1, x2, y2 = face.bbox
    left, top = max(0, int(x1)), max(0, int(y1))
    right, bottom = min(width, int(x2)), min(height, int(y2))
    if right - left < 3 or bottom - top < 3:
        return None
    return gray[top:bottom, left:right]


class SpoofScorer:
    """Combines texture, landmark, frequency, eye and motion cues into a risk score."""

    def __init__(
        self,
        weights: Optional[Mapping[str, float]] = None,
        threshold: float = 0.5,
        texture_scale: float = 64.0,
        frequency_scale: float = 16.0,
        expected_landmarks: Sequence[str] = EXPECTED_LANDMARKS,
        enabled_components: Optional[Iterable[str]] = None,
    ) -> None:
        self.weights = dict(weights if weights is not None else DEFAULT_SPOOF_WEIGHTS)
        self.threshold = threshold
        self.texture_scale = texture_scale
        self.frequency_scale = frequency_scale
        self.expected_landmarks = tuple(expected_landmarks)
        enabled = tuple(enabled_components) if enabled_components is not None else SPOOF_COMPONENTS
        unknown = set(enabled) - set(SPOOF_COMPONENTS)
        if unknown:
            raise ValueError(f"Unknown spoof components: {sorted(unknown)}")
        self.enabled_components = enabled

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "SpoofScorer":
        return cls(
            weights=config.spoof_weights,
            threshold=config.spoof_threshold,
            texture_scale=config.texture_scale,
            frequency_scale=config.frequency_scale,
        )

    def score(self, face: DetectedFace, pixels, width: int, height: int) -> SpoofVerdict:
        region = self._face_region(face, pixels, width, height)
        analyses: Dict[str, Callable[[], float]] = {
            "texture": lambda: self.texture_score(region),
            "landmarks": lambda: self.landmark_score(face),
            "frequency": lambda: self.frequency_score(region),
            "eye_reflection": lambda: self.eye_reflection_score(face),
            "motion": lambda: self.motion_score(face),
        }
        components = {name: self._safe(name, analyses[name]) for name in self.enabled_components}
        return self.verdict(components)

    def verdict(self, components: Mapping[str, float]) -> SpoofVerdict:
        risk = combine_scores(components, self.weights)
        verdict = SpoofVerdict(
            components=dict(components),
            risk_score=risk,
            risk_level=RiskLevel.from_score(risk),
            is_spoofed=risk >= self.threshold,
        )
        LOGGER.debug(
            "Spoof risk=%.3f level=%s spoofed=%s components=%s",
            risk,
            verdict.risk_level.value,
            verdict.is_spoofed,
            {k: round(v, 3) for k, v in components.items()},
        )
        return verdict

    @staticmethod
    def _face_region(face: DetectedFace, pixels, width: int, height: int) -> Optional[np.ndarray]:
        """Gray face crop, or None when the pixels or box cannot be used."""
        try:
            gray = to_gray(pixels, width, height)
            return crop_region(gray, face) if gray is not None else None
        except (TypeError, ValueError, OverflowError, cv2.error):
            LOGGER.debug("Unusable pixel data for face %s; texture and frequency stay neutral", face.bbox, exc_info=True)
            return None

    @staticmethod
    def _safe(name: str, analysis: Callable[[], float]) -> float:
        try:
            value = float(analysis())
        except Exception:
            LOGGER.debug("Spoof analysis %s failed; using neutral score", name, exc_info=True)
            return NEUTRAL_SCORE
        if not np.isfinite(value):
            return NEUTRAL_SCORE
        return float(np.clip(value, 0.0, 1.0))

    def texture_score(self, region: Optional[np.ndarray]) -> float:
        """Low local-binary-pattern spread (smooth, print-like skin) scores high."""
        if region is None or region.shape[0] < 3 or region.shape[1] < 3:
            return NEUTRAL_SCORE
        img = region.astype(np.int16)
        center = img[1:-1, 1:-1]
        neighbors = [
            img[0:-2, 0:-2], img[0:-2, 1:-1], img[0:-2, 2:],
            img[1:-1, 2:], img[2:, 2:], img[2:, 1:-1],
            img[2:, 0:-2], img[1:-1, 0:-2],
        ]
        codes = np.zeros(center.shape, dtype=np.uint8)
        for bit, neighbor in enumerate(neighbors):
            codes |= ((neighbor > center).astype(np.uint8) << bit)
        spread = float(codes.std())
        return 1.0 - float(np.clip(spread / self.texture_scale, 0.0, 1.0))

    def landmark_score(self, face: DetectedFace) -> float:
        """Incomplete or out-of-box landmarks are suspicious."""
        if not self.expected_landmarks:
            return NEUTRAL_SCORE
        present = [name for name in self.expected_landmarks if name in face.landmarks]
        coverage = len(present) / len(self.expected_landmarks)
        inside = all(bbox_contains(face.bbox, point) for point in face.landmarks.values())
        return 0.2 if coverage > 0.8 and inside else 0.7

    def frequency_score(self, region: Optional[np.ndarray]) -> float:
        """Little high-frequency energy (flat printed photo) scores high."""
        if region is None or region.shape[0] < 3 or region.shape[1] < 3:
            return NEUTRAL_SCORE
        laplacian = cv2.Laplacian(region.astype(np.float64), cv2.CV_64F, ksize=1)
        energy = float(np.abs(laplacian[1:-1, 1:-1]).mean())
        return float(np.clip(1.0 - energy / self.frequency_scale, 0.0, 1.0))

    def eye_reflection_score(self, face: DetectedFace) -> float:
        if "left_eye" in face.landmarks and "right_eye" in face.landmarks:
            return 0.2
        return 0.8

    def motion_score(self, face: DetectedFace) -> float:
        return 0.2 if face.tracking_id is not None else NEUTRAL_SCORE
