"""Common dataclasses and type aliases used across the facegate package."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

# Bounding box order: x1, y1, x2, y2 (pixel coordinates)
BBox = Tuple[float, float, float, float]
Point = Tuple[float, float]

EMBEDDING_DIM = 128

# Five-point landmark convention shared by the detector and the scorers
EXPECTED_LANDMARKS: Tuple[str, ...] = (
    "left_eye",
    "right_eye",
    "nose",
    "mouth_left",
    "mouth_right",
)


class InvalidEmbeddingError(ValueError):
    """Raised when an embedding violates the dimension/finiteness contract."""


@dataclass
class DetectedFace:
    """One face found in a frame by the detector."""

    bbox: BBox
    landmarks: Dict[str, Point] = field(default_factory=dict)
    yaw: float = 0.0
    roll: float = 0.0
    tracking_id: Optional[int] = None
    score: float = 1.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def landmark_count(self) -> int:
        return len(self.landmarks)

    @property
    def area(self) -> float:
        return bbox_area(self.bbox)


@dataclass(frozen=True)
class QualityScore:
    """Per-face quality components, each in [0, 1] where 1 is worst."""

    blur: float
    low_light: float
    pose: float

    @property
    def components(self) -> Tuple[float, float, float]:
        return self.blur, self.low_light, self.pose

    @property
    def percentage(self) -> int:
        average = sum(self.components) / 3.0
        return int(min(100, max(0, round(100.0 * (1.0 - average)))))


@dataclass
class Embedding:
    """One enrolled reference sample of an identity."""

    identity_id: str
    vector: np.ndarray
    display_name: str = ""
    enrolled_at: Optional[datetime] = None

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True)
class MatchCandidate:
    identity_id: str
    display_name: str
    similarity: float
    enrolled_at: Optional[datetime] = None

    @property
    def distance(self) -> float:
        return 1.0 - self.similarity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "display_name": self.display_name,
            "similarity": self.similarity,
            "distance": self.distance,
            "enrolled_at": self.enrolled_at.isoformat() if self.enrolled_at else None,
        }


@dataclass(frozen=True)
class MatchResult:
    """Ranked candidates (descending similarity) that passed the threshold."""

    candidates: Tuple[MatchCandidate, ...] = ()
    threshold: float = 0.0

    @property
    def matched(self) -> bool:
        return bool(self.candidates)

    @property
    def top_match(self) -> Optional[MatchCandidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def confidence(self) -> float:
        top = self.top_match
        return top.similarity if top is not None else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched": self.matched,
            "threshold": self.threshold,
            "confidence": self.confidence,
            "all_matches": [c.to_dict() for c in self.candidates],
        }


class RiskLevel(str, enum.Enum):
    SAFE = "SAFE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def from_score(cls, risk_score: float) -> "RiskLevel":
        if risk_score >= 0.8:
            return cls.CRITICAL
        if risk_score >= 0.6:
            return cls.HIGH
        if risk_score >= 0.4:
            return cls.MEDIUM
        if risk_score >= 0.2:
            return cls.LOW
        return cls.SAFE


@dataclass(frozen=True)
class SpoofVerdict:
    components: Dict[str, float]
    risk_score: float
    risk_level: RiskLevel
    is_spoofed: bool

    @property
    def confidence(self) -> float:
        return 1.0 - abs(self.risk_score - 0.5)

    @property
    def recommendation(self) -> str:
        if self.is_spoofed:
            return "REJECTED: possible presentation attack, retry with a live face"
        return "ACCEPTED: face verified as genuine"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "components": dict(self.components),
            "risk_score": self.risk_score,
            "risk_level": self.risk_level.value,
            "is_spoofed": self.is_spoofed,
            "confidence": self.confidence,
        }


class VerdictStatus(str, enum.Enum):
    SKIPPED = "SKIPPED"
    NO_FACE = "NO_FACE"
    LOW_QUALITY = "LOW_QUALITY"
    DETECTED_ONLY = "DETECTED_ONLY"
    SPOOFED = "SPOOFED"
    RECOGNIZED = "RECOGNIZED"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


@dataclass
class PipelineVerdict:
    """Result of one frame-processing pass for one subject."""

    status: VerdictStatus
    message: str
    is_detected: bool = False
    is_quality_good: bool = False
    is_recognized: bool = False
    is_live: bool = False
    identity_id: Optional[str] = None
    display_name: Optional[str] = None
    detection_confidence: float = 0.0
    quality_percentage: int = 0
    recognition_confidence: float = 0.0
    spoof_score: float = 0.0
    frame_index: Optional[int] = None
    face: Optional[DetectedFace] = None
    quality: Optional[QualityScore] = None
    match: Optional[MatchResult] = None
    spoof: Optional[SpoofVerdict] = None

    @property
    def can_admit(self) -> bool:
        return self.is_detected and self.is_quality_good and self.is_recognized and self.is_live

    @classmethod
    def empty(cls, status: VerdictStatus, message: str, frame_index: Optional[int] = None) -> "PipelineVerdict":
        """Verdict with every stage flag false (skipped, no face, error, timeout)."""
        return cls(status=status, message=message, frame_index=frame_index)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.status.value,
            "message": self.message,
            "frame_index": self.frame_index,
            "is_detected": self.is_detected,
            "is_quality_good": self.is_quality_good,
            "is_recognized": self.is_recognized,
            "is_live": self.is_live,
            "can_admit": self.can_admit,
            "identity_id": self.identity_id,
            "display_name": self.display_name,
            "detection_confidence": self.detection_confidence,
            "quality_percentage": self.quality_percentage,
            "recognition_confidence": self.recognition_confidence,
            "spoof_score": self.spoof_score,
        }
        if self.face is not None:
            payload["bbox"] = list(self.face.bbox)
            payload["tracking_id"] = self.face.tracking_id
        if self.match is not None:
            payload["recognition"] = self.match.to_dict()
        if self.spoof is not None:
            payload["spoofing"] = self.spoof.to_dict()
        return payload


def validate_embedding(vector: Sequence[float]) -> np.ndarray:
    """Coerce to a float64 vector and enforce dimension and finiteness."""
    try:
        arr = np.asarray(vector, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError) as exc:
        raise InvalidEmbeddingError(f"Embedding is not numeric: {exc}") from exc
    if arr.shape[0] != EMBEDDING_DIM:
        raise InvalidEmbeddingError(
            f"Invalid embedding dimension {arr.shape[0]}, expected {EMBEDDING_DIM}"
        )
    if not np.all(np.isfinite(arr)):
        raise InvalidEmbeddingError("Embedding contains NaN or infinite values")
    return arr


def l2_normalize(vec: np.ndarray) -> np.ndarray:
    """L2-normalize the input vector; an all-zero vector is returned unchanged.

    The vector is rescaled by its largest magnitude first so that tiny but
    non-zero inputs do not underflow to a zero norm.
    """
    scale = float(np.max(np.abs(vec))) if np.size(vec) else 0.0
    if scale == 0.0 or not np.isfinite(scale):
        return vec
    scaled = vec / scale
    return scaled / np.linalg.norm(scaled)


def iou(box_a: BBox, box_b: BBox) -> float:
    """Compute intersection-over-union between two bounding boxes."""
    ax1, ay1, ax2, ay2 = box_a
    bx1, by1, bx2, by2 = box_b
    inter_x1 = max(ax1, bx1)
    inter_y1 = max(ay1, by1)
    inter_x2 = min(ax2, bx2)
    inter_y2 = min(ay2, by2)
    inter_w = max(0.0, inter_x2 - inter_x1)
    inter_h = max(0.0, inter_y2 - inter_y1)
    inter_area = inter_w * inter_h
    if inter_area == 0:
        return 0.0
    union = bbox_area(box_a) + bbox_area(box_b) - inter_area
    if union <= 0 or math.isnan(union):
        return 0.0
    return inter_area / union


def bbox_area(box: BBox) -> float:
    """Compute area of a bounding box."""
    x1, y1, x2, y2 = box
    return max(0.0, (x2 - x1)) * max(0.0, (y2 - y1))


def bbox_contains(box: BBox, point: Point) -> bool:
    x, y = point
    x1, y1, x2, y2 = box
    return x1 <= x <= x2 and y1 <= y <= y2


def landmarks_from_array(points: Optional[np.ndarray]) -> Dict[str, Point]:
    """Name a (N, 2) keypoint array using the five-point convention."""
    if points is None:
        return {}
    arr = np.asarray(points, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 2:
        return {}
    named: Dict[str, Point] = {}
    for name, (x, y) in zip(EXPECTED_LANDMARKS, arr):
        if np.isfinite(x) and np.isfinite(y):
            named[name] = (float(x), float(y))
    return named
