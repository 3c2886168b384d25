"""IoU-based duplicate detection suppression and subject selection."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from facegate.types import DetectedFace, iou

LOGGER = logging.getLogger("facegate.detectors.dedup")


def suppress(faces: Sequence[DetectedFace], iou_threshold: float = 0.30) -> List[DetectedFace]:
    """Drop near-duplicate detections, keeping the first-seen face of each overlap group.

    A candidate is discarded when its IoU with any already retained face is
    strictly greater than ``iou_threshold``. Input order is preserved.
    """
    retained: List[DetectedFace] = []
    for candidate in faces:
        duplicate_of: Optional[DetectedFace] = None
        for kept in retained:
            if iou(candidate.bbox, kept.bbox) > iou_threshold:
                duplicate_of = kept
                break
        if duplicate_of is not None:
            LOGGER.debug("Suppressed duplicate face %s (overlaps %s)", candidate.bbox, duplicate_of.bbox)
            continue
        retained.append(candidate)
    return retained


def select_largest(faces: Sequence[DetectedFace]) -> Optional[DetectedFace]:
    """Largest-area face; the earliest one wins ties."""
    best: Optional[DetectedFace] = None
    for face in faces:
        if best is None or face.area > best.area:
            best = face
    return best
