#!/usr/bin/env python3
"""CLI for running the verification pipeline over a video file or camera."""

from __future__ import annotations

import argparse
import logging
from collections import Counter
from pathlib import Path
from typing import List, Optional, Union

import cv2
from tqdm import tqdm

from facegate.config import PipelineConfig, load_config
from facegate.detectors.face_retina import RetinaFaceDetector
from facegate.io_utils import dump_json, ensure_dir, setup_logging, write_jsonl
from facegate.pipeline import RecognitionPipeline, TimeoutGuard
from facegate.recognition.embed_facenet import FaceNetEmbedder
from facegate.recognition.sources import ParquetEmbeddingSource
from facegate.recognition.store import EmbeddingStore


LOGGER = logging.getLogger("scripts.verify_video")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run detection, recognition and liveness over video frames")
    parser.add_argument("source", type=str, help="Video file path or integer camera index")
    parser.add_argument(
        "--pipeline-config",
        type=Path,
        default=Path("configs/pipeline.yaml"),
        help="Pipeline configuration YAML",
    )
    parser.add_argument(
        "--embeddings-parquet",
        type=Path,
        default=Path("data/embeddings.parquet"),
        help="Enrolled embeddings table",
    )
    parser.add_argument("--facenet-model", type=str, required=True, help="Path to a 128-d FaceNet ONNX model")
    parser.add_argument("--mode", type=str, default=None, help="Override operating mode (multi|single)")
    parser.add_argument("--identities", type=str, nargs="*", default=None, help="Preload only these identity ids")
    parser.add_argument("--output", type=Path, default=Path("data/outputs/verdicts.jsonl"), help="JSONL verdict log")
    parser.add_argument(
        "--summary",
        type=Path,
        default=None,
        help="Run summary JSON (defaults to <output>.summary.json)",
    )
    parser.add_argument("--max-frames", type=int, default=None, help="Stop after this many frames")
    parser.add_argument("--timeout-ms", type=int, default=None, help="Per-frame wall clock limit")
    parser.add_argument(
        "--providers",
        type=str,
        nargs="*",
        default=None,
        help="ONNX execution providers (overrides platform defaults)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    return parser.parse_args()


def _open_capture(source: str) -> cv2.VideoCapture:
    target: Union[int, str] = int(source) if source.isdigit() else source
    cap = cv2.VideoCapture(target)
    if not cap.isOpened():
        raise RuntimeError(f"Unable to open video source {source}")
    return cap


def _as_list(result) -> List:
    return result if isinstance(result, list) else [result]


def main() -> None:
    args = parse_args()
    setup_logging(logging.DEBUG if args.debug else logging.INFO)

    config: PipelineConfig = load_config(args.pipeline_config)
    if args.mode:
        config.mode = args.mode
    providers = tuple(args.providers) if args.providers else None

    store = EmbeddingStore(ParquetEmbeddingSource(args.embeddings_parquet), max_embeddings=config.max_cached_embeddings)
    pipeline = RecognitionPipeline(
        detector=RetinaFaceDetector(providers=providers),
        embedder=FaceNetEmbedder(args.facenet_model, providers=providers),
        store=store,
        config=config,
    )
    stats = pipeline.preload(args.identities)
    LOGGER.info("Preloaded %d identities / %d embeddings", stats.identity_count, stats.embedding_count)

    guard = TimeoutGuard(pipeline, timeout_ms=args.timeout_ms)
    cap = _open_capture(args.source)
    total: Optional[int] = int(cap.get(cv2.CAP_PROP_FRAME_COUNT)) or None
    if args.max_frames is not None:
        total = min(total, args.max_frames) if total else args.max_frames

    ensure_dir(args.output.parent)
    counts: Counter = Counter()
    frames = 0
    try:
        with args.output.open("w", encoding="utf-8") as fh, tqdm(total=total, unit="frame") as progress:
            while args.max_frames is None or frames < args.max_frames:
                ok, frame = cap.read()
                if not ok:
                    break
                frames += 1
                verdicts = _as_list(guard.process_frame(frame))
                for verdict in verdicts:
                    counts[verdict.status.value] += 1
                    if verdict.can_admit:
                        LOGGER.info("Frame %s: %s", verdict.frame_index, verdict.message)
                write_jsonl(fh, (v.to_dict() for v in verdicts))
                progress.update(1)
    finally:
        cap.release()
        guard.close()
        pipeline.dispose()

    summary_path = args.summary or args.output.with_suffix(".summary.json")
    dump_json(
        summary_path,
        {
            "source": args.source,
            "frames_read": frames,
            "timeouts": guard.timeouts,
            "verdict_counts": dict(counts),
            "pipeline": pipeline.stats(),
            "config": config.to_dict(),
        },
    )
    LOGGER.info("Processed %d frames -> %s (%s); summary %s", frames, args.output, dict(counts), summary_path)


if __name__ == "__main__":
    main()
