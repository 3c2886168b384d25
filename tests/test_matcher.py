import numpy as np
import pytest

from facegate.recognition.matcher import EmbeddingMatcher, cosine_similarity
from facegate.recognition.sources import InMemoryEmbeddingSource
from facegate.recognition.store import EmbeddingStore
from facegate.types import EMBEDDING_DIM, Embedding


def basis(index: int) -> np.ndarray:
    vec = np.zeros(EMBEDDING_DIM, dtype=np.float64)
    vec[index] = 1.0
    return vec


def blend(index_a: int, index_b: int, similarity: float) -> np.ndarray:
    """Unit vector whose cosine with basis(index_a) equals ``similarity``."""
    return similarity * basis(index_a) + np.sqrt(1.0 - similarity**2) * basis(index_b)


def make_store(embeddings) -> EmbeddingStore:
    source = InMemoryEmbeddingSource(embeddings)
    store = EmbeddingStore(source)
    store.load_all()
    return store


def test_cosine_identical_is_one():
    rng = np.random.default_rng(7)
    vec = rng.normal(size=EMBEDDING_DIM)
    assert cosine_similarity(vec, vec) == pytest.approx(1.0)


def test_cosine_bounds_and_symmetry():
    rng = np.random.default_rng(11)
    for _ in range(20):
        a = rng.normal(size=EMBEDDING_DIM)
        b = rng.normal(size=EMBEDDING_DIM)
        sim = cosine_similarity(a, b)
        assert -1.0 <= sim <= 1.0
        assert sim == cosine_similarity(b, a)
    assert cosine_similarity(basis(0), -basis(0)) == pytest.approx(-1.0)


def test_cosine_zero_vector_is_zero():
    assert cosine_similarity(np.zeros(EMBEDDING_DIM), basis(3)) == 0.0
    assert cosine_similarity(np.zeros(EMBEDDING_DIM), np.zeros(EMBEDDING_DIM)) == 0.0


def test_cosine_shape_mismatch_raises():
    with pytest.raises(ValueError):
        cosine_similarity(np.ones(3), np.ones(4))


def test_empty_store_never_matches():
    matcher = EmbeddingMatcher(EmbeddingStore())
    result = matcher.match(basis(0), threshold=0.6)
    assert not result.matched
    assert result.candidates == ()
    assert result.top_match is None
    assert result.confidence == 0.0


def test_query_equal_to_cached_embedding_matches_itself():
    store = make_store([Embedding("S1", basis(0), display_name="Student One")])
    result = EmbeddingMatcher(store).match(basis(0), threshold=0.6)
    assert result.matched
    assert result.top_match.identity_id == "S1"
    assert result.top_match.similarity == pytest.approx(1.0)
    assert result.top_match.distance == pytest.approx(0.0)


def test_match_orders_filters_and_truncates():
    store = make_store(
        [
            Embedding("A", blend(0, 1, 0.65)),
            Embedding("B", blend(0, 2, 0.95)),
            Embedding("C", blend(0, 3, 0.80)),
            Embedding("D", blend(0, 4, 0.75)),
            Embedding("E", blend(0, 5, 0.40)),
        ]
    )
    result = EmbeddingMatcher(store).match(basis(0), threshold=0.6, top_k=3)
    assert [c.identity_id for c in result.candidates] == ["B", "C", "D"]
    sims = [c.similarity for c in result.candidates]
    assert sims == sorted(sims, reverse=True)
    assert all(s >= 0.6 for s in sims)


def test_threshold_is_inclusive():
    store = make_store([Embedding("A", basis(0))])
    assert EmbeddingMatcher(store).match(basis(0), threshold=1.0).matched


def test_match_below_threshold_is_unmatched():
    store = make_store([Embedding("A", blend(0, 1, 0.75))])
    result = EmbeddingMatcher(store).match(basis(0), threshold=0.8)
    assert not result.matched


def test_ties_keep_cache_order():
    store = make_store([Embedding("first", basis(0)), Embedding("second", basis(0))])
    result = EmbeddingMatcher(store).match(basis(0), threshold=0.5)
    assert [c.identity_id for c in result.candidates] == ["first", "second"]


def test_match_is_idempotent_without_store_changes():
    rng = np.random.default_rng(3)
    store = make_store([Embedding(f"id{i}", rng.normal(size=EMBEDDING_DIM)) for i in range(10)])
    matcher = EmbeddingMatcher(store)
    query = rng.normal(size=EMBEDDING_DIM)
    first = matcher.match(query, threshold=-1.0, top_k=5)
    second = matcher.match(query, threshold=-1.0, top_k=5)
    assert first.to_dict() == second.to_dict()


def test_non_finite_query_raises():
    store = make_store([Embedding("A", basis(0))])
    query = basis(0)
    query[5] = np.nan
    with pytest.raises(ValueError):
        EmbeddingMatcher(store).match(query, threshold=0.5)


def test_topk_ignores_threshold():
    store = make_store([Embedding("A", blend(0, 1, 0.1)), Embedding("B", blend(0, 2, 0.2))])
    top = EmbeddingMatcher(store).topk(basis(0), k=1)
    assert [c.identity_id for c in top] == ["B"]


def test_tiny_vectors_keep_their_direction():
    tiny = 1e-13 * basis(0)
    store = make_store([Embedding("S1", tiny)])
    result = EmbeddingMatcher(store).match(tiny, threshold=0.6)
    assert result.matched
    assert result.top_match.similarity == pytest.approx(1.0)
    assert cosine_similarity(tiny, tiny) == pytest.approx(1.0)

    vanishing = 1e-200 * blend(0, 1, 0.8)
    assert EmbeddingMatcher(store).match(vanishing, threshold=0.6).top_match.similarity == pytest.approx(0.8)
    assert cosine_similarity(vanishing, basis(0)) == pytest.approx(0.8)
