from datetime import datetime

import numpy as np
import pytest

pytest.importorskip("pyarrow")

from facegate.recognition.sources import (  # noqa: E402
    ParquetEmbeddingSource,
    SourceUnavailableError,
    build_embeddings_from_images,
    write_embeddings_parquet,
)
from facegate.recognition.store import EmbeddingStore  # noqa: E402
from facegate.types import EMBEDDING_DIM, DetectedFace, Embedding  # noqa: E402


def test_parquet_source_feeds_store(tmp_path):
    rng = np.random.default_rng(0)
    enrolled = datetime(2024, 9, 2, 8, 30)
    path = write_embeddings_parquet(
        tmp_path / "facebank" / "embeddings.parquet",
        [
            Embedding("S1", rng.normal(size=EMBEDDING_DIM), display_name="Ana", enrolled_at=enrolled),
            Embedding("S1", rng.normal(size=EMBEDDING_DIM), display_name="Ana", enrolled_at=enrolled),
            Embedding("S2", rng.normal(size=EMBEDDING_DIM), display_name="Ben", enrolled_at=enrolled),
        ],
    )
    source = ParquetEmbeddingSource(path)
    assert source.list_identities() == ["S1", "S2"]

    fetched = source.fetch_embeddings(["S1", "missing"])
    assert list(fetched) == ["S1"]
    assert len(fetched["S1"]) == 2
    row = fetched["S1"][0]
    assert row.display_name == "Ana"
    assert row.enrolled_at == enrolled
    assert row.vector.dtype == np.float64 and row.vector.shape == (EMBEDDING_DIM,)

    store = EmbeddingStore(source)
    assert store.load_all() == 2
    assert store.stats().embedding_count == 3


def test_missing_table_raises_source_error(tmp_path):
    source = ParquetEmbeddingSource(tmp_path / "absent.parquet")
    with pytest.raises(SourceUnavailableError):
        source.list_identities()


def test_store_survives_unavailable_source(tmp_path):
    store = EmbeddingStore(ParquetEmbeddingSource(tmp_path / "absent.parquet"))
    assert store.load_all() == 0
    assert store.load(["S1"]) == 0
    assert len(store) == 0


def test_write_without_rows_raises(tmp_path):
    with pytest.raises(RuntimeError):
        write_embeddings_parquet(tmp_path / "empty.parquet", [])


class OneFaceDetector:
    def detect(self, image):
        height, width = image.shape[:2]
        return [DetectedFace(bbox=(0.0, 0.0, float(width), float(height)))]


class ConstantEmbedder:
    def embed(self, image, face):
        return np.ones(EMBEDDING_DIM) / np.sqrt(EMBEDDING_DIM)


def test_enrollment_skips_unreadable_images(tmp_path):
    cv2 = pytest.importorskip("cv2")
    person = tmp_path / "S1_Ana"
    person.mkdir()
    (person / "a_corrupt.jpg").write_bytes(b"not an image")
    cv2.imwrite(str(person / "b_good.png"), np.full((32, 32, 3), 90, dtype=np.uint8))

    report = build_embeddings_from_images(tmp_path, OneFaceDetector(), ConstantEmbedder())

    assert [p.name for p in report.skipped] == ["a_corrupt.jpg"]
    assert len(report.embeddings) == 1
    assert report.embeddings[0].identity_id == "S1_Ana"
    assert report.embeddings[0].display_name == "S1 Ana"
