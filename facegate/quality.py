"""Per-face quality scoring (blur, low light, head pose)."""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from facegate.types import EXPECTED_LANDMARKS, DetectedFace, QualityScore

LOGGER = logging.getLogger("facegate.quality")


class QualityAssessor:
    """Scores one detected face into a QualityScore.

    Blur and low light are approximated from landmark completeness: a detector
    that cannot place the expected keypoints is usually looking at a blurred or
    underexposed face. Subclasses may override ``blur_score`` and
    ``low_light_score`` with pixel-level analysis; ``assess`` stays the same.
    """

    def __init__(
        self,
        max_pose_angle: float = 30.0,
        expected_landmarks: Sequence[str] = EXPECTED_LANDMARKS,
    ) -> None:
        if max_pose_angle <= 0:
            raise ValueError("max_pose_angle must be positive")
        self.max_pose_angle = float(max_pose_angle)
        self.expected_landmarks = tuple(expected_landmarks)

    def assess(self, face: DetectedFace) -> QualityScore:
        completeness = self.landmark_completeness(face)
        score = QualityScore(
            blur=self.blur_score(face, completeness),
            low_light=self.low_light_score(face, completeness),
            pose=self.pose_score(face),
        )
        LOGGER.debug(
            "Quality bbox=%s completeness=%.2f blur=%.2f low_light=%.2f pose=%.2f -> %d%%",
            face.bbox,
            completeness,
            score.blur,
            score.low_light,
            score.pose,
            score.percentage,
        )
        return score

    def landmark_completeness(self, face: DetectedFace) -> float:
        if not self.expected_landmarks:
            return 1.0
        present = sum(1 for name in self.expected_landmarks if name in face.landmarks)
        return present / len(self.expected_landmarks)

    def pose_score(self, face: DetectedFace) -> float:
        magnitude = abs(float(face.yaw)) + abs(float(face.roll))
        if not np.isfinite(magnitude):
            return 1.0
        return float(np.clip(magnitude, 0.0, self.max_pose_angle) / self.max_pose_angle)

    def blur_score(self, face: DetectedFace, completeness: float) -> float:
        return float(np.clip(0.2 + 0.6 * (1.0 - completeness), 0.0, 1.0))

    def low_light_score(self, face: DetectedFace, completeness: float) -> float:
        return float(np.clip(0.2 + 0.5 * (1.0 - completeness), 0.0, 1.0))
