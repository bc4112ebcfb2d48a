"""Tests for the embedding cache and similarity metrics."""

import asyncio
import json

import numpy as np
import pytest

from knowledge_graph.embedding_cache import EmbeddingCache, SimilarityMetric, similarity
from knowledge_graph.embedding_service import HashEmbeddingBackend
from knowledge_graph.errors import ValidationError, CacheFormatError

ALL_METRICS = list(SimilarityMetric)


class CountingBackend(HashEmbeddingBackend):
    """Hash backend that records every batch it is asked to embed"""

    def __init__(self, dimension=64):
        super().__init__(dimension=dimension)
        self.batches = []

    async def embed_batch(self, texts):
        self.batches.append(list(texts))
        return await super().embed_batch(texts)


# ---------------------------------------------------------------------------
# similarity()
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("metric", ALL_METRICS)
def test_similarity_is_symmetric_and_bounded(metric):
    rng = np.random.default_rng(7)
    for _ in range(25):
        a = rng.normal(size=16)
        b = rng.normal(size=16) * rng.uniform(0.1, 10)
        ab = similarity(a, b, metric)
        ba = similarity(b, a, metric)
        assert ab == pytest.approx(ba, abs=1e-12)
        assert 0.0 <= ab <= 1.0


@pytest.mark.parametrize("metric", ALL_METRICS)
def test_identical_vectors_are_maximally_similar(metric):
    v = [0.3, -1.2, 2.0, 0.5]
    assert similarity(v, v, metric) == pytest.approx(1.0)


def test_metric_formulas():
    a = np.array([1.0, 0.0])
    b = np.array([0.0, 1.0])
    assert similarity(a, b, "cosine") == pytest.approx(0.0)
    assert similarity(a, b, "dot") == pytest.approx(0.5)
    assert similarity(a, b, "euclidean") == pytest.approx(1 / (1 + np.sqrt(2)))
    assert similarity(a, b, "manhattan") == pytest.approx(1 / 3)
    # Opposite directions
    assert similarity(a, -a, "cosine") == 0.0
    assert similarity(a, -a, "dot") == pytest.approx(0.0)


def test_zero_vector_yields_zero_for_norm_metrics():
    zero = [0.0, 0.0, 0.0]
    other = [1.0, 2.0, 3.0]
    assert similarity(zero, other, "cosine") == 0.0
    assert similarity(zero, other, "dot") == 0.0


def test_dimension_mismatch_and_unknown_metric_raise():
    with pytest.raises(ValidationError):
        similarity([1.0, 2.0], [1.0, 2.0, 3.0])
    with pytest.raises(ValidationError):
        similarity([1.0], [1.0], "jaccard")


# ---------------------------------------------------------------------------
# embed()
# ---------------------------------------------------------------------------

def test_embed_dedupes_within_call_and_serves_cache(clock):
    backend = CountingBackend()
    cache = EmbeddingCache(backend, max_entries=100, batch_size=16, clock=clock)

    vectors = asyncio.run(cache.embed(["alpha", "beta", "alpha"]))

    assert backend.batches == [["alpha", "beta"]]
    assert len(vectors) == 3
    np.testing.assert_array_equal(vectors[0], vectors[2])

    asyncio.run(cache.embed(["alpha"]))
    assert len(backend.batches) == 1


def test_embed_batches_backend_calls(clock):
    backend = CountingBackend()
    cache = EmbeddingCache(backend, max_entries=100, batch_size=2, clock=clock)

    asyncio.run(cache.embed(["a", "b", "c", "d", "e"]))

    assert backend.batches == [["a", "b"], ["c", "d"], ["e"]]


def test_embed_without_cache_neither_reads_nor_writes(clock):
    backend = CountingBackend()
    cache = EmbeddingCache(backend, max_entries=100, clock=clock)
    asyncio.run(cache.embed(["alpha"]))

    asyncio.run(cache.embed(["alpha", "gamma"], use_cache=False))

    assert backend.batches[-1] == ["alpha", "gamma"]
    assert "gamma" not in cache


def test_inserting_beyond_cap_evicts_least_recently_used(clock):
    cache = EmbeddingCache(HashEmbeddingBackend(dimension=8), max_entries=2, clock=clock)
    asyncio.run(cache.embed(["a", "b"]))
    cache.get("a")  # refresh

    asyncio.run(cache.embed(["c"]))

    assert len(cache) == 2
    assert "a" in cache and "c" in cache
    assert "b" not in cache


def test_trim_keeps_most_recent_fraction(cache):
    texts = [f"concept {i}" for i in range(10)]
    asyncio.run(cache.embed(texts))

    removed = cache.trim(0.3)

    assert removed == 7
    assert [t for t in texts if t in cache] == texts[-3:]


def test_trim_keeps_at_least_one_unless_ratio_is_zero(cache):
    asyncio.run(cache.embed([f"t{i}" for i in range(10)]))

    cache.trim(0.01)
    assert len(cache) == 1

    cache.trim(0)
    assert len(cache) == 0

    with pytest.raises(ValidationError):
        cache.trim(1.5)


def test_critical_pressure_trims_registered_cache(backend, clock, make_governor):
    governor = make_governor(0.95)
    cache = EmbeddingCache(backend, max_entries=100, pressure_keep_ratio=0.5, memory_governor=governor, clock=clock)
    asyncio.run(cache.embed([f"t{i}" for i in range(10)]))

    governor.sample()

    assert len(cache) == 5
    assert "embedding-cache" in governor.components


def test_memory_usage_reports_entries_and_bytes(cache):
    asyncio.run(cache.embed(["one", "two"]))
    usage = cache.memory_usage()
    assert usage["entries"] == 2
    assert usage["estimated_bytes"] == 2 * 64 * 8


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def test_find_similar_ranks_and_truncates(cache):
    candidates = ["graph theory", "graph databases", "cooking pasta", "theory of graph"]

    matches = asyncio.run(cache.find_similar("graph theory", candidates, threshold=0.0, limit=2))

    assert len(matches) == 2
    assert matches[0]["text"] in ("graph theory", "theory of graph")
    assert matches[0]["similarity"] == pytest.approx(1.0)
    assert matches[0]["similarity"] >= matches[1]["similarity"]


def test_find_similar_applies_threshold(cache):
    matches = asyncio.run(cache.find_similar("graph theory", ["graph theory", "cooking pasta"], threshold=0.99))
    assert [m["text"] for m in matches] == ["graph theory"]
    assert asyncio.run(cache.find_similar("x", [])) == []


def test_compute_text_similarity_uses_cache(cache):
    score = asyncio.run(cache.compute_text_similarity("machine learning", "learning machine"))
    assert score == pytest.approx(1.0)
    assert "machine learning" in cache and "learning machine" in cache


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def test_snapshot_round_trip_into_fresh_cache(cache, backend, clock):
    texts = ["alpha", "beta", "gamma"]
    asyncio.run(cache.embed(texts))
    snapshot = cache.export_snapshot()

    fresh = EmbeddingCache(backend, max_entries=100, clock=clock)
    imported = fresh.import_snapshot(snapshot)

    assert imported == 3
    for text in texts:
        np.testing.assert_array_equal(fresh.get(text), cache.get(text))


def test_import_never_overwrites_unless_clearing(cache, clock):
    asyncio.run(cache.embed(["alpha"]))
    original = cache.get("alpha").copy()
    data = cache.export_snapshot().to_json_dict()
    data["entries"]["alpha"]["vector"] = [0.5] * 64
    data["entries"]["delta"] = {"vector": [0.1] * 64, "timestamp": clock.now}

    assert cache.import_snapshot(data) == 1
    np.testing.assert_array_equal(cache.get("alpha"), original)

    assert cache.import_snapshot(data, clear_existing=True) == 2
    np.testing.assert_array_equal(cache.get("alpha"), np.full(64, 0.5))


def test_dimension_mismatch_leaves_cache_untouched(cache):
    asyncio.run(cache.embed(["alpha"]))
    data = {
        "version": 1,
        "modelName": "other",
        "dimension": 3,
        "entries": {"beta": {"vector": [1.0, 2.0, 3.0], "timestamp": 1}},
    }

    with pytest.raises(CacheFormatError):
        cache.import_snapshot(data, clear_existing=True)

    assert len(cache) == 1 and "alpha" in cache


def test_malformed_snapshots_are_rejected(cache):
    with pytest.raises(CacheFormatError):
        cache.import_snapshot({"modelName": "hash-64", "dimension": 64})
    with pytest.raises(CacheFormatError):
        cache.import_snapshot({"modelName": "hash-64", "dimension": 64, "entries": {"x": {"vector": [1.0]}}})
    with pytest.raises(CacheFormatError):
        cache.import_snapshot(["not", "a", "snapshot"])
    assert len(cache) == 0


def test_save_and_load_snapshot_file(cache, backend, clock, tmp_path):
    asyncio.run(cache.embed(["alpha", "beta"]))
    path = tmp_path / "nested" / "cache.json"

    assert cache.save_snapshot(path) == 2

    data = json.loads(path.read_text())
    assert data["version"] == 1
    assert data["modelName"] == "hash-64"
    assert data["dimension"] == 64
    assert "createdAt" in data
    assert set(data["entries"]) == {"alpha", "beta"}
    assert len(data["entries"]["alpha"]["vector"]) == 64

    fresh = EmbeddingCache(backend, max_entries=100, clock=clock)
    assert fresh.load_snapshot(path) == 2


def test_load_snapshot_rejects_invalid_json(cache, tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(CacheFormatError):
        cache.load_snapshot(path)
