"""Cosine similarity search over the embedding store."""

from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

import numpy as np

from facegate.recognition.store import EmbeddingStore
from facegate.types import MatchCandidate, MatchResult, l2_normalize

LOGGER = logging.getLogger("facegate.recognition.matcher")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in double precision; zero-magnitude input yields 0.0."""
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.shape != vb.shape:
        raise ValueError("Embedding shapes do not match")
    if not (np.all(np.isfinite(va)) and np.all(np.isfinite(vb))):
        return 0.0
    if not (np.any(va) and np.any(vb)):
        return 0.0
    return float(np.clip(np.dot(l2_normalize(va), l2_normalize(vb)), -1.0, 1.0))


class EmbeddingMatcher:
    """Linear scan over every cached embedding.

    The threshold is supplied per call by the caller (derived from face
    quality), so the matcher carries no quality policy of its own.
    """

    def __init__(self, store: EmbeddingStore) -> None:
        self.store = store

    def _scores(self, query: Sequence[float]) -> List[Tuple[float, MatchCandidate]]:
        vec = np.asarray(query, dtype=np.float64).reshape(-1)
        if not np.all(np.isfinite(vec)):
            raise ValueError("Query embedding contains NaN or infinite values")
        unit_query = l2_normalize(vec)
        if not np.any(unit_query):
            LOGGER.debug("Zero-magnitude query embedding; all similarities are 0")
        scored: List[Tuple[float, MatchCandidate]] = []
        for entry in self.store.snapshot():
            if entry.unit.shape != unit_query.shape:
                raise ValueError("Embedding shapes do not match")
            similarity = float(np.clip(np.dot(entry.unit, unit_query), -1.0, 1.0))
            scored.append(
                (
                    similarity,
                    MatchCandidate(
                        identity_id=entry.embedding.identity_id,
                        display_name=entry.embedding.display_name,
                        similarity=similarity,
                        enrolled_at=entry.embedding.enrolled_at,
                    ),
                )
            )
        # sorted() is stable, so equal similarities keep cache order
        scored.sort(key=lambda item: item[0], reverse=True)
        return scored

    def match(self, query: Sequence[float], threshold: float, top_k: int = 3) -> MatchResult:
        if top_k < 1:
            raise ValueError("top_k must be >= 1")
        scored = self._scores(query)
        passed = [candidate for similarity, candidate in scored if similarity >= threshold]
        result = MatchResult(candidates=tuple(passed[:top_k]), threshold=float(threshold))
        if result.matched:
            LOGGER.debug(
                "Match %s sim=%.3f (threshold %.2f, %d candidates passed)",
                result.top_match.identity_id,
                result.confidence,
                threshold,
                len(passed),
            )
        else:
            best = scored[0][0] if scored else float("nan")
            LOGGER.debug("No match at threshold %.2f (best %.3f over %d embeddings)", threshold, best, len(scored))
        return result

    def topk(self, query: Sequence[float], k: int = 3) -> List[MatchCandidate]:
        """Return the top-k candidates without applying a threshold."""
        return [candidate for _, candidate in self._scores(query)[:k]]
