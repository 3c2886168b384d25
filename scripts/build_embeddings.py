#!/usr/bin/env python3
"""CLI for enrolling per-identity image folders into a parquet embedding table."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from facegate.detectors.face_retina import RetinaFaceDetector
from facegate.io_utils import setup_logging
from facegate.recognition.embed_facenet import FaceNetEmbedder
from facegate.recognition.sources import build_embeddings_from_images, write_embeddings_parquet


LOGGER = logging.getLogger("scripts.build_embeddings")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build enrolled FaceNet embeddings from labeled images")
    parser.add_argument(
        "--images-dir",
        type=Path,
        default=Path("data/enrollment"),
        help="Directory containing labeled face images (one subdirectory per identity id)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("data/embeddings.parquet"),
        help="Parquet file to write",
    )
    parser.add_argument("--facenet-model", type=str, required=True, help="Path to a 128-d FaceNet ONNX model")
    parser.add_argument(
        "--providers",
        type=str,
        nargs="*",
        default=None,
        help="Execution providers for ONNXRuntime (e.g. CUDAExecutionProvider)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    setup_logging()

    providers = tuple(args.providers) if args.providers else None
    detector = RetinaFaceDetector(providers=providers, min_face_frac=0.0)
    embedder = FaceNetEmbedder(args.facenet_model, providers=providers)

    report = build_embeddings_from_images(args.images_dir, detector, embedder)
    if not report.embeddings:
        raise SystemExit(f"No enrollable faces found under {args.images_dir}")
    write_embeddings_parquet(args.output, report.embeddings)

    LOGGER.info(
        "Enrollment written: %s (%d embeddings, %d images skipped)",
        args.output,
        len(report.embeddings),
        len(report.skipped),
    )


if __name__ == "__main__":
    main()
