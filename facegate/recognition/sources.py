"""Persistence collaborators that feed the embedding store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import cv2
import numpy as np
import pandas as pd

from facegate.io_utils import ensure_dir, list_images
from facegate.types import Embedding

LOGGER = logging.getLogger("facegate.recognition.sources")


class SourceUnavailableError(RuntimeError):
    """The persistence backend cannot be reached or read."""


class EmbeddingSource:
    """Interface expected by EmbeddingStore.

    Implementations return raw Embedding records; validation happens in the
    store at ingestion time.
    """

    def fetch_embeddings(self, identity_ids: Iterable[str]) -> Dict[str, List[Embedding]]:
        raise NotImplementedError

    def list_identities(self) -> List[str]:
        raise NotImplementedError


class InMemoryEmbeddingSource(EmbeddingSource):
    """Dictionary-backed source for tests, demos and enrollment flows."""

    def __init__(self, embeddings: Optional[Iterable[Embedding]] = None) -> None:
        self._rows: Dict[str, List[Embedding]] = {}
        for embedding in embeddings or []:
            self.add(embedding)

    def add(self, embedding: Embedding) -> None:
        self._rows.setdefault(embedding.identity_id, []).append(embedding)

    def remove(self, identity_id: str) -> bool:
        return self._rows.pop(identity_id, None) is not None

    def fetch_embeddings(self, identity_ids: Iterable[str]) -> Dict[str, List[Embedding]]:
        return {
            identity_id: list(self._rows[identity_id])
            for identity_id in identity_ids
            if identity_id in self._rows
        }

    def list_identities(self) -> List[str]:
        return sorted(self._rows)


class ParquetEmbeddingSource(EmbeddingSource):
    """Reads enrolled embeddings from a parquet table.

    Expected columns: ``identity_id``, ``display_name``, ``enrolled_at`` and
    ``embedding`` (list of floats). The file is re-read on every fetch so a
    reload picks up new enrollments.
    """

    COLUMNS = ("identity_id", "display_name", "enrolled_at", "embedding")

    def __init__(self, parquet_path: Path) -> None:
        self.parquet_path = Path(parquet_path)

    def _read(self) -> pd.DataFrame:
        if not self.parquet_path.exists():
            raise SourceUnavailableError(f"Embedding table not found: {self.parquet_path}")
        try:
            df = pd.read_parquet(self.parquet_path)
        except Exception as exc:
            raise SourceUnavailableError(f"Unable to read {self.parquet_path}: {exc}") from exc
        missing = [col for col in ("identity_id", "embedding") if col not in df.columns]
        if missing:
            raise SourceUnavailableError(f"Embedding table {self.parquet_path} lacks columns {missing}")
        df["identity_id"] = df["identity_id"].astype(str)
        return df

    def list_identities(self) -> List[str]:
        df = self._read()
        return sorted(df["identity_id"].unique().tolist())

    def fetch_embeddings(self, identity_ids: Iterable[str]) -> Dict[str, List[Embedding]]:
        wanted = set(identity_ids)
        df = self._read()
        df = df[df["identity_id"].isin(wanted)]
        result: Dict[str, List[Embedding]] = {}
        for _, row in df.iterrows():
            embedding = Embedding(
                identity_id=row["identity_id"],
                vector=_normalize_embedding(row["embedding"]),
                display_name=str(row.get("display_name") or ""),
                enrolled_at=_to_datetime(row.get("enrolled_at")),
            )
            result.setdefault(embedding.identity_id, []).append(embedding)
        LOGGER.debug(
            "Fetched %d embeddings for %d/%d identities from %s",
            sum(len(v) for v in result.values()),
            len(result),
            len(wanted),
            self.parquet_path,
        )
        return result


def write_embeddings_parquet(path: Path, embeddings: Sequence[Embedding]) -> Path:
    """Persist embeddings in the layout ParquetEmbeddingSource reads."""
    rows = [
        {
            "identity_id": e.identity_id,
            "display_name": e.display_name,
            "enrolled_at": e.enrolled_at,
            "embedding": np.asarray(e.vector, dtype=np.float32).tolist(),
        }
        for e in embeddings
    ]
    if not rows:
        raise RuntimeError("No embeddings to write")
    path = Path(path)
    ensure_dir(path.parent)
    df = pd.DataFrame(rows, columns=list(ParquetEmbeddingSource.COLUMNS))
    df["enrolled_at"] = pd.to_datetime(df["enrolled_at"])
    df.to_parquet(path, index=False)
    LOGGER.info("Wrote %d embeddings for %d identities to %s", len(df), df["identity_id"].nunique(), path)
    return path


@dataclass
class EnrollmentReport:
    embeddings: List[Embedding]
    skipped: List[Path]


def _load_image(path: Path) -> np.ndarray:
    image = cv2.imread(str(path))
    if image is None:
        raise FileNotFoundError(f"Unable to read image: {path}")
    return image


def build_embeddings_from_images(images_dir: Path, detector, embedder) -> EnrollmentReport:
    """Enroll per-identity image folders (``images_dir/<identity_id>/*.jpg``).

    The largest detected face of each image is embedded; unreadable images
    and images without a face are reported as skipped.
    """
    embeddings: List[Embedding] = []
    skipped: List[Path] = []
    enrolled_at = datetime.now()
    for identity_dir in sorted(p for p in Path(images_dir).iterdir() if p.is_dir()):
        identity_id = identity_dir.name
        for img_path in list_images(identity_dir):
            try:
                image = _load_image(img_path)
            except FileNotFoundError as exc:
                LOGGER.warning("%s; skipping", exc)
                skipped.append(img_path)
                continue
            faces = detector.detect(image)
            if not faces:
                LOGGER.warning("No face found in enrollment image %s", img_path)
                skipped.append(img_path)
                continue
            face = max(faces, key=lambda f: f.area)
            vector = embedder.embed(image, face)
            embeddings.append(
                Embedding(
                    identity_id=identity_id,
                    vector=np.asarray(vector, dtype=np.float64),
                    display_name=identity_id.replace("_", " "),
                    enrolled_at=enrolled_at,
                )
            )
    LOGGER.info("Enrollment built %d embeddings (%d images skipped)", len(embeddings), len(skipped))
    return EnrollmentReport(embeddings=embeddings, skipped=skipped)


def _to_datetime(raw) -> Optional[datetime]:
    if raw is None:
        return None
    if isinstance(raw, datetime) and not isinstance(raw, pd.Timestamp):
        return raw
    try:
        if pd.isna(raw):
            return None
    except (TypeError, ValueError):
        pass
    return pd.Timestamp(raw).to_pydatetime()


def _normalize_embedding(raw) -> np.ndarray:
    """Convert parquet-loaded embedding column into a 1D float64 vector."""
    if isinstance(raw, np.ndarray):
        if raw.dtype == object or raw.ndim > 1:
            parts = [np.asarray(part, dtype=np.float64).ravel() for part in raw]
            arr = np.concatenate(parts) if parts else np.empty((0,), dtype=np.float64)
        else:
            arr = raw.astype(np.float64)
    elif isinstance(raw, list):
        if raw and isinstance(raw[0], (list, tuple, np.ndarray)):
            parts = [np.asarray(part, dtype=np.float64).ravel() for part in raw]
            arr = np.concatenate(parts) if parts else np.empty((0,), dtype=np.float64)
        else:
            arr = np.asarray(raw, dtype=np.float64)
    else:
        arr = np.asarray(raw, dtype=np.float64)
    return arr.reshape(-1)
