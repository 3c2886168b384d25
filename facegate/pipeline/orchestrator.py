"""Per-frame orchestration: admission, detection, quality gate, matching, liveness."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Union

import numpy as np

from facegate.config import OperatingMode, PipelineConfig, mode_from_name
from facegate.detectors.dedup import select_largest, suppress
from facegate.liveness.spoof import SpoofScorer
from facegate.quality import QualityAssessor
from facegate.recognition.matcher import EmbeddingMatcher
from facegate.recognition.store import EmbeddingStore, StoreStats
from facegate.types import DetectedFace, PipelineVerdict, VerdictStatus

LOGGER = logging.getLogger("facegate.pipeline")

FrameResult = Union[PipelineVerdict, List[PipelineVerdict]]


class RecognitionPipeline:
    """High-level controller turning camera frames into PipelineVerdicts.

    Stages run strictly in order for each subject and stop at the first
    failing one: detect, quality, match, liveness. Cheap gates come first so
    that low-quality or unknown faces never reach the expensive stages.

    The detector must provide ``detect(frame) -> List[DetectedFace]`` and the
    embedder ``embed(frame, face) -> vector``.
    """

    def __init__(
        self,
        detector,
        embedder,
        store: EmbeddingStore,
        config: Optional[PipelineConfig] = None,
        mode: Optional[Union[OperatingMode, str]] = None,
        quality_assessor: Optional[QualityAssessor] = None,
        matcher: Optional[EmbeddingMatcher] = None,
        spoof_scorer: Optional[SpoofScorer] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.detector = detector
        self.embedder = embedder
        self.store = store
        self.quality_assessor = quality_assessor or QualityAssessor(max_pose_angle=self.config.max_pose_angle)
        self.matcher = matcher or EmbeddingMatcher(store)
        self.spoof_scorer = spoof_scorer or SpoofScorer.from_config(self.config)
        # Held for a whole frame and for preload/dispose so cache writes never
        # interleave with in-flight matching.
        self._lock = threading.RLock()
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self.frame_counter = 0
        self.status_counts: Counter = Counter()
        self.mode = self.config.operating_mode
        if mode is not None:
            self.set_mode(mode)

    def set_mode(self, mode: Union[OperatingMode, str]) -> None:
        resolved = mode_from_name(mode) if isinstance(mode, str) else mode
        with self._lock:
            self.mode = resolved
        LOGGER.info(
            "Operating mode set to %s (multi_subject=%s threshold_boost=%.2f)",
            resolved.name,
            resolved.multi_subject,
            resolved.threshold_boost,
        )

    def preload(self, identity_ids: Optional[Iterable[str]] = None) -> StoreStats:
        """Populate the embedding store; ``None`` loads every known identity."""
        with self._lock:
            if identity_ids is None:
                LOGGER.info("Preloading embeddings for all identities")
                self.store.load_all()
            else:
                ids = list(identity_ids)
                LOGGER.info("Preloading embeddings for %d identities", len(ids))
                self.store.load(ids)
            stats = self.store.stats()
        if stats.embedding_count == 0:
            LOGGER.warning("Embedding store is empty after preload; every face will be unrecognized")
        return stats

    def dispose(self) -> None:
        """Release the embedding store, worker threads and detector resources."""
        with self._lock:
            self.store.clear()
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None
            close = getattr(self.detector, "close", None)
            if callable(close):
                close()
        LOGGER.info("Pipeline disposed after %d frames (%s)", self.frame_counter, dict(self.status_counts))

    def stats(self) -> Dict[str, object]:
        return {
            "frames_seen": self.frame_counter,
            "mode": self.mode.name,
            "status_counts": {status.value: count for status, count in self.status_counts.items()},
        }

    def process_frame(
        self,
        frame,
        pixels=None,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> FrameResult:
        """Process one camera frame.

        Returns a single verdict in single-subject mode and a list (one entry
        per selected face, or one terminal entry) in multi-subject mode.
        """
        with self._lock:
            self.frame_counter += 1
            frame_index = self.frame_counter
            if self.config.enable_frame_skipping and frame_index % self.config.skip_interval != 0:
                verdicts = [
                    PipelineVerdict.empty(
                        VerdictStatus.SKIPPED, "Frame skipped for performance", frame_index=frame_index
                    )
                ]
                return self._finish(verdicts)

            try:
                pixels, width, height = _resolve_pixels(frame, pixels, width, height)
                verdicts = self._process_admitted(frame, pixels, width, height, frame_index)
            except Exception as exc:
                LOGGER.exception("Frame %d failed", frame_index)
                verdicts = [
                    PipelineVerdict.empty(
                        VerdictStatus.ERROR, f"Error processing frame: {exc}", frame_index=frame_index
                    )
                ]
            return self._finish(verdicts)

    def _process_admitted(self, frame, pixels, width, height, frame_index: int) -> List[PipelineVerdict]:
        faces = list(self.detector.detect(frame))
        if not faces:
            return [PipelineVerdict.empty(VerdictStatus.NO_FACE, "No face detected in frame", frame_index=frame_index)]
        LOGGER.debug("Frame %d: detected %d face(s)", frame_index, len(faces))

        if self.config.enable_duplicate_filtering:
            faces = suppress(faces, self.config.iou_threshold)
            LOGGER.debug("Frame %d: %d face(s) after duplicate filter", frame_index, len(faces))

        subjects = self.select_subjects(faces)

        def evaluate(face: DetectedFace) -> PipelineVerdict:
            return self._evaluate_subject(face, frame, pixels, width, height, frame_index)

        workers = min(self.config.subject_workers, len(subjects))
        if workers <= 1:
            return [evaluate(face) for face in subjects]
        return list(self._subject_executor().map(evaluate, subjects))

    def select_subjects(self, faces: Sequence[DetectedFace]) -> List[DetectedFace]:
        if not faces:
            return []
        if self.mode.multi_subject:
            return list(faces)
        if self.mode.single_subject_pick == "largest":
            largest = select_largest(faces)
            return [largest] if largest is not None else []
        return [faces[0]]

    def _evaluate_subject(
        self,
        face: DetectedFace,
        frame,
        pixels,
        width: int,
        height: int,
        frame_index: int,
    ) -> PipelineVerdict:
        try:
            return self._run_stages(face, frame, pixels, width, height, frame_index)
        except Exception as exc:
            LOGGER.exception("Frame %d: subject %s failed", frame_index, face.bbox)
            return PipelineVerdict(
                status=VerdictStatus.ERROR,
                message=f"Error processing face: {exc}",
                frame_index=frame_index,
                face=face,
            )

    def _run_stages(
        self,
        face: DetectedFace,
        frame,
        pixels,
        width: int,
        height: int,
        frame_index: int,
    ) -> PipelineVerdict:
        config = self.config
        detection_confidence = float(face.score)
        quality = self.quality_assessor.assess(face)
        quality_pct = quality.percentage

        if config.enable_quality_early_exit and quality_pct < config.quality_early_exit:
            LOGGER.debug("Frame %d: quality %d%% below %d%%; early exit", frame_index, quality_pct, config.quality_early_exit)
            return PipelineVerdict(
                status=VerdictStatus.LOW_QUALITY,
                message="Face quality too low. Ensure good lighting and a clear, frontal face.",
                is_detected=True,
                detection_confidence=detection_confidence,
                quality_percentage=quality_pct,
                frame_index=frame_index,
                face=face,
                quality=quality,
            )

        threshold = config.threshold_for(quality_pct, self.mode)
        query = self.embedder.embed(frame, face)
        match = self.matcher.match(query, threshold, config.top_k)
        if not match.matched:
            return PipelineVerdict(
                status=VerdictStatus.DETECTED_ONLY,
                message="Face not recognized among enrolled identities",
                is_detected=True,
                is_quality_good=True,
                detection_confidence=detection_confidence,
                quality_percentage=quality_pct,
                frame_index=frame_index,
                face=face,
                quality=quality,
                match=match,
            )

        top = match.top_match
        base = dict(
            is_detected=True,
            is_quality_good=True,
            is_recognized=True,
            identity_id=top.identity_id,
            display_name=top.display_name,
            detection_confidence=detection_confidence,
            quality_percentage=quality_pct,
            recognition_confidence=top.similarity,
            frame_index=frame_index,
            face=face,
            quality=quality,
            match=match,
        )
        if not config.enable_anti_spoofing:
            return PipelineVerdict(
                status=VerdictStatus.RECOGNIZED,
                message=f"{_label(top)} recognized (anti-spoofing disabled)",
                is_live=True,
                **base,
            )

        spoof = self.spoof_scorer.score(face, pixels, width, height)
        if spoof.is_spoofed:
            LOGGER.info(
                "Frame %d: spoof suspected for %s (risk %.2f, %s)",
                frame_index,
                top.identity_id,
                spoof.risk_score,
                spoof.risk_level.value,
            )
            return PipelineVerdict(
                status=VerdictStatus.SPOOFED,
                message="Possible fake face detected. Please present your actual face.",
                is_live=False,
                spoof_score=spoof.risk_score,
                spoof=spoof,
                **base,
            )

        return PipelineVerdict(
            status=VerdictStatus.RECOGNIZED,
            message=f"{_label(top)} verified as present (confidence {top.similarity:.0%})",
            is_live=True,
            spoof_score=spoof.risk_score,
            spoof=spoof,
            **base,
        )

    def _finish(self, verdicts: List[PipelineVerdict]) -> FrameResult:
        for verdict in verdicts:
            self.status_counts[verdict.status] += 1
        if self.mode.multi_subject:
            return verdicts
        return verdicts[0]

    def _subject_executor(self) -> concurrent.futures.ThreadPoolExecutor:
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.config.subject_workers,
                thread_name_prefix="facegate-subject",
            )
        return self._executor


class TimeoutGuard:
    """Caller-side wall-clock limit around ``process_frame``.

    At most one frame is in flight. When a frame exceeds the limit the caller
    gets a TIMEOUT verdict with every flag false and the call is abandoned;
    frames offered while it is still running are dropped with TIMEOUT instead
    of queueing behind it.
    """

    def __init__(self, pipeline: RecognitionPipeline, timeout_ms: Optional[int] = None) -> None:
        self.pipeline = pipeline
        self.timeout_ms = timeout_ms if timeout_ms is not None else pipeline.config.pipeline_timeout_ms
        self.timeouts = 0
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="facegate-frame")
        self._inflight: Optional[concurrent.futures.Future] = None

    def process_frame(self, frame, pixels=None, width: Optional[int] = None, height: Optional[int] = None) -> FrameResult:
        if self._inflight is not None and not self._inflight.done():
            LOGGER.warning("Previous frame still running; dropping frame with TIMEOUT")
            return self._timeout("Previous frame still running past the time limit")
        future = self._executor.submit(self.pipeline.process_frame, frame, pixels, width, height)
        self._inflight = future
        try:
            return future.result(timeout=self.timeout_ms / 1000.0)
        except concurrent.futures.TimeoutError:
            future.cancel()
            LOGGER.warning("Frame processing exceeded %d ms; reporting TIMEOUT", self.timeout_ms)
            return self._timeout(f"Frame processing exceeded {self.timeout_ms} ms")

    def _timeout(self, message: str) -> FrameResult:
        self.timeouts += 1
        verdict = PipelineVerdict.empty(VerdictStatus.TIMEOUT, message)
        return [verdict] if self.pipeline.mode.multi_subject else verdict

    __call__ = process_frame

    def close(self) -> None:
        self._executor.shutdown(wait=True)


def _resolve_pixels(frame, pixels, width: Optional[int], height: Optional[int]):
    """Default the spoof-scoring pixels and size to the frame itself."""
    if pixels is None and isinstance(frame, np.ndarray):
        pixels = frame
    if (width is None or height is None) and isinstance(pixels, np.ndarray) and pixels.ndim >= 2:
        height = pixels.shape[0] if height is None else height
        width = pixels.shape[1] if width is None else width
    return pixels, int(width or 0), int(height or 0)


def _label(candidate) -> str:
    return candidate.display_name or candidate.identity_id
