"""In-memory embedding cache with explicit load/clear lifecycle."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from facegate.recognition.sources import EmbeddingSource
from facegate.types import EMBEDDING_DIM, Embedding, InvalidEmbeddingError, l2_normalize, validate_embedding

LOGGER = logging.getLogger("facegate.recognition.store")

# float64 storage per cached vector
_BYTES_PER_EMBEDDING = EMBEDDING_DIM * 8


@dataclass(frozen=True)
class StoreStats:
    identity_count: int
    embedding_count: int
    approx_size_bytes: int
    loaded_at: Optional[datetime] = None

    @property
    def approx_size_mb(self) -> float:
        return self.approx_size_bytes / (1024 * 1024)


@dataclass(frozen=True)
class CachedEmbedding:
    """Validated embedding plus its unit-length vector, as iterated by the matcher."""

    embedding: Embedding
    unit: np.ndarray


class EmbeddingStore:
    """identity_id -> reference embeddings, bounded by a total embedding count.

    All access goes through one re-entrant lock: loads and clears never
    interleave with a snapshot taken for matching.
    """

    def __init__(self, source: Optional[EmbeddingSource] = None, max_embeddings: int = 5000) -> None:
        if max_embeddings < 1:
            raise ValueError("max_embeddings must be >= 1")
        self.source = source
        self.max_embeddings = max_embeddings
        self._cache: Dict[str, List[CachedEmbedding]] = {}
        self._lock = threading.RLock()
        self._loaded_at: Optional[datetime] = None

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._cache.values())

    def __contains__(self, identity_id: object) -> bool:
        with self._lock:
            return identity_id in self._cache

    def load(self, identity_ids: Iterable[str]) -> int:
        """Fetch and replace the cached entries for ``identity_ids``.

        Returns the number of identities whose entries were replaced. A
        failure for one identity leaves its previous entries untouched and
        does not stop the others.
        """
        ids = list(dict.fromkeys(identity_ids))
        if not ids:
            return 0
        if self.source is None:
            LOGGER.warning("EmbeddingStore has no source; cannot load %d identities", len(ids))
            return 0
        replaced = 0
        for identity_id in ids:
            try:
                fetched = self.source.fetch_embeddings([identity_id])
            except Exception as exc:
                LOGGER.warning("Embedding fetch failed for %s (%s); keeping cached entries", identity_id, exc)
                continue
            rows = fetched.get(identity_id, [])
            validated = self._validate_rows(identity_id, rows)
            if validated is None:
                continue
            with self._lock:
                self._replace(identity_id, validated)
                self._loaded_at = datetime.now()
            replaced += 1
        stats = self.stats()
        LOGGER.info(
            "Embedding store loaded %d/%d identities (cache: %d identities, %d embeddings, %.2f MB)",
            replaced,
            len(ids),
            stats.identity_count,
            stats.embedding_count,
            stats.approx_size_mb,
        )
        return replaced

    def load_all(self) -> int:
        if self.source is None:
            LOGGER.warning("EmbeddingStore has no source; load_all skipped")
            return 0
        try:
            identity_ids = self.source.list_identities()
        except Exception as exc:
            LOGGER.warning("Unable to list identities from source (%s); cache left unchanged", exc)
            return 0
        return self.load(identity_ids)

    def add(self, embedding: Embedding) -> bool:
        """Insert one embedding without touching the others for its identity."""
        try:
            vector = validate_embedding(embedding.vector)
        except InvalidEmbeddingError as exc:
            LOGGER.warning("Rejected embedding for %s: %s", embedding.identity_id, exc)
            return False
        with self._lock:
            if self._total() >= self.max_embeddings:
                LOGGER.warning(
                    "Embedding store full (%d); dropping embedding for %s",
                    self.max_embeddings,
                    embedding.identity_id,
                )
                return False
            self._cache.setdefault(embedding.identity_id, []).append(_cached(embedding, vector))
        return True

    def clear(self) -> None:
        with self._lock:
            count = self._total()
            self._cache.clear()
            self._loaded_at = None
        LOGGER.info("Embedding store cleared (%d embeddings released)", count)

    def stats(self) -> StoreStats:
        with self._lock:
            total = self._total()
            return StoreStats(
                identity_count=len(self._cache),
                embedding_count=total,
                approx_size_bytes=total * _BYTES_PER_EMBEDDING,
                loaded_at=self._loaded_at,
            )

    def snapshot(self) -> Tuple[CachedEmbedding, ...]:
        """Flat, immutable view of every cached embedding in cache order."""
        with self._lock:
            return tuple(entry for entries in self._cache.values() for entry in entries)

    def identities(self) -> List[str]:
        with self._lock:
            return list(self._cache)

    def _validate_rows(self, identity_id: str, rows: List[Embedding]) -> Optional[List[CachedEmbedding]]:
        validated: List[CachedEmbedding] = []
        for row in rows:
            if row.identity_id != identity_id:
                LOGGER.warning("Source returned embedding for %s under %s; skipping", row.identity_id, identity_id)
                continue
            try:
                vector = validate_embedding(row.vector)
            except InvalidEmbeddingError as exc:
                LOGGER.warning("Rejected embedding for %s: %s", identity_id, exc)
                continue
            validated.append(_cached(row, vector))
        if rows and not validated:
            LOGGER.warning("All %d embeddings for %s were rejected; keeping cached entries", len(rows), identity_id)
            return None
        return validated

    def _replace(self, identity_id: str, entries: List[CachedEmbedding]) -> None:
        self._cache.pop(identity_id, None)
        if not entries:
            return
        room = self.max_embeddings - self._total()
        if room <= 0:
            LOGGER.warning("Embedding store full (%d); %s not cached", self.max_embeddings, identity_id)
            return
        if len(entries) > room:
            LOGGER.warning(
                "Embedding store cap reached; caching %d of %d embeddings for %s",
                room,
                len(entries),
                identity_id,
            )
            entries = entries[:room]
        self._cache[identity_id] = entries

    def _total(self) -> int:
        return sum(len(v) for v in self._cache.values())


def _cached(embedding: Embedding, vector: np.ndarray) -> CachedEmbedding:
    stored = Embedding(
        identity_id=embedding.identity_id,
        vector=vector,
        display_name=embedding.display_name,
        enrolled_at=embedding.enrolled_at,
    )
    unit = l2_normalize(vector)
    unit.setflags(write=False)
    return CachedEmbedding(embedding=stored, unit=unit)
