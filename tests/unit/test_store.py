"""Tests for the vector index: ordering, ties, dimensions, persistence, ANN."""
import threading

import numpy as np
import pytest

from docent.errors import DimensionMismatch
from docent.rag.store import VectorIndex


@pytest.fixture
def fixture_index():
    index = VectorIndex(ann_enabled=False)
    index.upsert("A", [1.0, 0.0])
    index.upsert("B", [0.0, 1.0])
    index.upsert("C", [1.0, 1.0])
    return index


def test_cosine_ordering(fixture_index):
    hits = fixture_index.search([1.0, 0.0], k=3)

    assert [h.chunk_id for h in hits] == ["A", "C", "B"]
    assert hits[0].score == pytest.approx(1.0)
    assert hits[1].score == pytest.approx(0.7071, abs=1e-4)
    assert hits[2].score == pytest.approx(0.0)
    assert [h.rank for h in hits] == [1, 2, 3]


def test_k_larger_than_index(fixture_index):
    assert len(fixture_index.search([1.0, 0.0], k=10)) == 3


def test_empty_index_returns_nothing():
    assert VectorIndex(ann_enabled=False).search([1.0, 0.0], k=5) == []


def test_ties_are_broken_by_chunk_id():
    index = VectorIndex(ann_enabled=False)
    for chunk_id in ["d", "b", "c", "a"]:
        index.upsert(chunk_id, [2.0, 2.0])

    hits = index.search([1.0, 1.0], k=4)

    assert [h.chunk_id for h in hits] == ["a", "b", "c", "d"]


def test_near_ties_within_epsilon_use_id_order_and_non_increasing_scores():
    index = VectorIndex(ann_enabled=False)
    index.upsert("z", [1.0, 0.0])
    index.upsert("a", [1.0, 1e-4])  # cosine 1 - 5e-9

    hits = index.search([1.0, 0.0], k=2)

    assert [h.chunk_id for h in hits] == ["a", "z"]
    assert hits[0].score >= hits[1].score


def test_tie_at_cutoff_includes_lowest_ids():
    index = VectorIndex(ann_enabled=False)
    index.upsert("best", [1.0, 0.0])
    for chunk_id in ["t3", "t1", "t2"]:
        index.upsert(chunk_id, [1.0, 1.0])

    hits = index.search([1.0, 0.0], k=2)

    assert [h.chunk_id for h in hits] == ["best", "t1"]


def test_search_is_repeatable(fixture_index):
    first = fixture_index.search([0.3, 0.7], k=3)
    second = fixture_index.search([0.3, 0.7], k=3)
    assert first == second


def test_zero_vector_scores_zero():
    index = VectorIndex(ann_enabled=False)
    index.upsert("zero", [0.0, 0.0])
    index.upsert("one", [0.0, 1.0])

    hits = index.search([0.0, 1.0], k=2)

    assert [(h.chunk_id, h.score) for h in hits] == [("one", pytest.approx(1.0)), ("zero", 0.0)]


def test_dimension_fixed_by_first_upsert(fixture_index):
    with pytest.raises(DimensionMismatch):
        fixture_index.upsert("D", [1.0, 0.0, 0.0])
    with pytest.raises(DimensionMismatch):
        fixture_index.search([1.0, 0.0, 0.0], k=1)
    assert "D" not in fixture_index


def test_dimension_fixed_at_construction():
    index = VectorIndex(dimension=3, ann_enabled=False)
    with pytest.raises(DimensionMismatch) as excinfo:
        index.upsert("x", [1.0, 2.0])
    assert excinfo.value.expected == 3
    assert excinfo.value.actual == 2


def test_upsert_many_is_all_or_nothing(fixture_index):
    with pytest.raises(DimensionMismatch):
        fixture_index.upsert_many([("D", [1.0, 0.0]), ("E", [1.0])])
    assert "D" not in fixture_index


def test_upsert_replaces_and_delete_is_idempotent(fixture_index):
    fixture_index.upsert("B", [1.0, 0.0])
    assert fixture_index.search([1.0, 0.0], k=1)[0].chunk_id in ("A", "B")
    assert fixture_index.delete("B") is True
    assert fixture_index.delete("B") is False
    assert "B" not in {h.chunk_id for h in fixture_index.search([1.0, 0.0], k=5)}


def test_document_bookkeeping(fixture_index):
    fixture_index.set_document_chunks("doc", ["A", "C"])
    assert fixture_index.document_chunk_ids("doc") == frozenset({"A", "C"})

    removed = fixture_index.remove_document("doc")

    assert removed == frozenset({"A", "C"})
    assert fixture_index.ids() == ["B"]
    assert fixture_index.document_chunk_ids("doc") == frozenset()


def test_save_and_open_round_trip(tmp_path, fixture_index):
    fixture_index.set_document_chunks("doc", ["A", "B"])
    fixture_index.save(tmp_path / "index")

    reopened = VectorIndex.open(tmp_path / "index", ann_enabled=False)

    assert len(reopened) == 3
    assert reopened.dimension == 2
    assert reopened.document_chunk_ids("doc") == frozenset({"A", "B"})
    assert reopened.search([1.0, 0.0], k=3) == fixture_index.search([1.0, 0.0], k=3)


def test_open_missing_directory_is_empty(tmp_path):
    index = VectorIndex.open(tmp_path / "nothing", ann_enabled=False)
    assert len(index) == 0
    assert index.dimension is None


def test_context_manager_saves_on_close(tmp_path):
    with VectorIndex.open(tmp_path / "index", ann_enabled=False) as index:
        index.upsert("A", [1.0, 2.0])

    assert (tmp_path / "index" / "index.json").exists()
    assert len(VectorIndex.open(tmp_path / "index", ann_enabled=False)) == 1


def test_concurrent_writers_and_readers_never_see_partial_vectors():
    index = VectorIndex(dimension=8, ann_enabled=False)
    errors = []

    def writer(offset):
        for i in range(200):
            index.upsert(f"w{offset}-{i % 20}", np.full(8, float(i + 1)))
            if i % 3 == 0:
                index.delete(f"w{offset}-{(i + 7) % 20}")

    def reader():
        for _ in range(200):
            try:
                for hit in index.search(np.ones(8), k=5):
                    # Every stored vector is constant, so cosine with ones is 1
                    assert hit.score == pytest.approx(1.0)
            except AssertionError as e:
                errors.append(e)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(3)]
    threads += [threading.Thread(target=reader) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []


def test_approximate_search_recall():
    rng = np.random.default_rng(7)
    vectors = rng.normal(size=(10_000, 24)).astype(np.float32)
    index = VectorIndex(
        ann_enabled=True, ann_min_vectors=1_000, hnsw_m=32, ef_construction=200, ef_search=256
    )
    index.upsert_many((f"c{i:05d}", v) for i, v in enumerate(vectors))
    queries = rng.normal(size=(50, 24))

    recall = index.measure_recall(list(queries), k=10)

    assert recall >= 0.95
    assert index.stats()["ann_built"]
    assert index.recall_acceptable(list(queries), k=10)


def test_approximate_search_sees_recent_writes():
    rng = np.random.default_rng(3)
    index = VectorIndex(ann_enabled=True, ann_min_vectors=100)
    index.upsert_many((f"c{i}", v) for i, v in enumerate(rng.normal(size=(500, 8))))
    index.search(np.ones(8), k=3)  # builds the graph

    index.upsert("fresh", np.ones(8))

    assert index.search(np.ones(8), k=1)[0].chunk_id == "fresh"


def _clustered_index(rng, cluster_size=200):
    """6000 random vectors plus a tight cluster around the first axis."""
    index = VectorIndex(ann_enabled=True, ann_min_vectors=1_000, ef_search=128)
    background = rng.normal(size=(6_000, 24))
    axis = np.zeros(24)
    axis[0] = 1.0
    cluster = axis + rng.normal(scale=0.01, size=(cluster_size, 24))
    index.upsert_many((f"b{i:05d}", v) for i, v in enumerate(background))
    index.upsert_many((f"n{i:04d}", v) for i, v in enumerate(cluster))
    return index, axis


def test_approximate_search_after_deletes_matches_exact():
    rng = np.random.default_rng(11)
    index, axis = _clustered_index(rng)
    index.search(axis, k=10)  # builds the graph around the cluster

    index.delete_many(f"n{i:04d}" for i in range(200))

    approx = [hit.chunk_id for hit in index.search(axis, k=10, exact=False)]
    exact = [hit.chunk_id for hit in index.search(axis, k=10, exact=True)]
    assert len(approx) == 10
    assert len(set(approx) & set(exact)) >= 9
    assert not any(chunk_id.startswith("n") for chunk_id in approx)


def test_heavy_churn_rebuilds_the_graph():
    rng = np.random.default_rng(12)
    index, axis = _clustered_index(rng)
    index.search(axis, k=10)

    index.delete_many(f"b{i:05d}" for i in range(1_000))
    index.search(axis, k=10)

    assert len(index._ann_cache.ids) == len(index) == 5_200
    assert index._ann_changes == set()
