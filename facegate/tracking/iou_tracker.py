"""Small IoU tracker that gives detector output stable cross-frame ids."""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence

from facegate.types import BBox, iou

LOGGER = logging.getLogger("facegate.tracking")


class IouFaceTracker:
    """Greedy IoU association between consecutive frames.

    Each incoming box takes the id of the best-overlapping live track (above
    ``match_iou``) that has not been claimed in this frame; otherwise a new id
    is issued. Tracks unseen for more than ``track_buffer`` frames are dropped.
    """

    def __init__(self, match_iou: float = 0.3, track_buffer: int = 30) -> None:
        self.match_iou = match_iou
        self.track_buffer = track_buffer
        self.next_id = 1
        self.tracks: Dict[int, Dict] = {}

    def assign(self, bboxes: Sequence[BBox]) -> List[int]:
        ids: List[int] = []
        claimed = set()
        for bbox in bboxes:
            matched_id = None
            best_overlap = self.match_iou
            for tid, track in self.tracks.items():
                if tid in claimed:
                    continue
                overlap = iou(bbox, track["bbox"])
                if overlap > best_overlap:
                    best_overlap = overlap
                    matched_id = tid
            if matched_id is None:
                matched_id = self.next_id
                self.next_id += 1
                LOGGER.debug("New face track %d at %s", matched_id, bbox)
            self.tracks[matched_id] = {"bbox": tuple(bbox), "age": 0}
            claimed.add(matched_id)
            ids.append(matched_id)

        for tid in list(self.tracks.keys()):
            if tid not in claimed:
                self.tracks[tid]["age"] += 1
                if self.tracks[tid]["age"] > self.track_buffer:
                    self.tracks.pop(tid)
        return ids

    def reset(self) -> None:
        self.tracks.clear()
