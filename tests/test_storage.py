"""
Unit tests for pattern_vault.storage.SQLiteVectorStore
"""

from __future__ import annotations

import pytest

from pattern_vault.storage import (
    CLUSTERS, FAILURES, MEMORIES, SQLiteVectorStore, cosine_distance_batch,
)


class TestInsertAndGet:
    def test_insert_returns_generated_id(self, store):
        pid = store.insert(MEMORIES, [1.0, 0.0, 0.0], {"file_path": "a.py"})
        assert pid
        record = store.get(MEMORIES, pid)
        assert record is not None
        assert record.payload == {"file_path": "a.py"}
        assert record.vector == pytest.approx([1.0, 0.0, 0.0])

    def test_insert_with_explicit_id(self, store):
        assert store.insert(MEMORIES, [1.0], {}, point_id="m1") == "m1"
        assert store.get(MEMORIES, "m1") is not None

    def test_get_missing_returns_none(self, store):
        assert store.get(MEMORIES, "nope") is None

    def test_upsert_replaces_existing_point(self, store):
        store.upsert(MEMORIES, [("m1", [1.0, 0.0], {"v": 1})])
        store.upsert(MEMORIES, [("m1", [0.0, 1.0], {"v": 2})])
        record = store.get(MEMORIES, "m1")
        assert record.payload == {"v": 2}
        assert record.vector == pytest.approx([0.0, 1.0])
        assert store.count(MEMORIES) == 1

    def test_collections_are_separate(self, store):
        store.insert(MEMORIES, [1.0], {}, point_id="x")
        assert store.get(FAILURES, "x") is None
        assert store.count(CLUSTERS) == 0

    def test_unknown_collection_rejected(self, store):
        with pytest.raises(ValueError):
            store.insert("bogus", [1.0], {})

    def test_get_many_preserves_order_and_skips_missing(self, store):
        for pid in ("a", "b", "c"):
            store.insert(MEMORIES, [1.0], {"n": pid}, point_id=pid)
        records = store.get_many(MEMORIES, ["c", "missing", "a"])
        assert [r.id for r in records] == ["c", "a"]

    def test_data_survives_reopen(self, tmp_path):
        path = str(tmp_path / "vault.db")
        s1 = SQLiteVectorStore(path)
        s1.insert(MEMORIES, [0.5, 0.5], {"k": "v"}, point_id="p")
        s1.close()

        s2 = SQLiteVectorStore(path)
        try:
            assert s2.get(MEMORIES, "p").payload == {"k": "v"}
        finally:
            s2.close()

    def test_in_memory_store(self):
        s = SQLiteVectorStore(":memory:")
        s.insert(MEMORIES, [1.0], {}, point_id="p")
        assert s.count(MEMORIES) == 1
        s.close()


class TestUpdate:
    def test_merges_fields_and_keeps_vector(self, store):
        store.insert(MEMORIES, [1.0, 2.0], {"a": 1, "b": 2}, point_id="m")
        record = store.update(MEMORIES, "m", {"b": 3, "c": 4})
        assert record.payload == {"a": 1, "b": 3, "c": 4}
        assert store.get(MEMORIES, "m").vector == pytest.approx([1.0, 2.0])

    def test_replaces_vector_when_given(self, store):
        store.insert(MEMORIES, [1.0, 0.0], {}, point_id="m")
        store.update(MEMORIES, "m", {}, vector=[0.0, 1.0])
        assert store.get(MEMORIES, "m").vector == pytest.approx([0.0, 1.0])

    def test_callable_sees_current_payload(self, store):
        store.insert(MEMORIES, [1.0], {"count": 4}, point_id="m")
        store.update(MEMORIES, "m", lambda p: {"count": p["count"] + 1})
        assert store.get(MEMORIES, "m").payload["count"] == 5

    def test_missing_point_returns_none(self, store):
        assert store.update(MEMORIES, "nope", {"a": 1}) is None
        assert store.count(MEMORIES) == 0


class TestDelete:
    def test_delete_by_id(self, store):
        store.insert(MEMORIES, [1.0], {}, point_id="m")
        assert store.delete(MEMORIES, "m") is True
        assert store.delete(MEMORIES, "m") is False
        assert store.count(MEMORIES) == 0

    def test_delete_where_filters(self, store):
        store.insert(MEMORIES, [1.0], {"related_id": "p"}, point_id="d1")
        store.insert(MEMORIES, [1.0], {"related_id": "p"}, point_id="d2")
        store.insert(MEMORIES, [1.0], {"related_id": "q"}, point_id="d3")
        assert store.delete_where(MEMORIES, filters={"related_id": "p"}) == 2
        assert [r.id for r in store.all(MEMORIES)] == ["d3"]

    def test_delete_where_without_criteria_deletes_nothing(self, store):
        store.insert(MEMORIES, [1.0], {}, point_id="m")
        assert store.delete_where(MEMORIES) == 0
        assert store.count(MEMORIES) == 1


class TestSearch:
    def test_results_sorted_by_distance(self, store):
        store.insert(MEMORIES, [0.0, 1.0], {}, point_id="far")
        store.insert(MEMORIES, [1.0, 0.0], {}, point_id="exact")
        store.insert(MEMORIES, [1.0, 1.0], {}, point_id="mid")
        hits = store.search(MEMORIES, [1.0, 0.0], top_k=3)
        assert [h.id for h in hits] == ["exact", "mid", "far"]
        assert hits[0].distance == pytest.approx(0.0, abs=1e-6)
        assert hits[2].distance == pytest.approx(1.0, abs=1e-6)

    def test_top_k_limits(self, store):
        for i in range(5):
            store.insert(MEMORIES, [1.0, float(i)], {}, point_id=f"p{i}")
        assert len(store.search(MEMORIES, [1.0, 0.0], top_k=2)) == 2
        assert store.search(MEMORIES, [1.0, 0.0], top_k=0) == []

    def test_ties_keep_insertion_order(self, store):
        for pid in ("first", "second", "third"):
            store.insert(MEMORIES, [2.0, 0.0], {}, point_id=pid)
        hits = store.search(MEMORIES, [1.0, 0.0], top_k=3)
        assert [h.id for h in hits] == ["first", "second", "third"]

    def test_equality_filters(self, store):
        store.insert(MEMORIES, [1.0, 0.0], {"file_path": "a.py"}, point_id="a")
        store.insert(MEMORIES, [1.0, 0.0], {"file_path": "b.py"}, point_id="b")
        hits = store.search(MEMORIES, [1.0, 0.0], filters={"file_path": "b.py"})
        assert [h.id for h in hits] == ["b"]

    def test_boolean_filter(self, store):
        store.insert(MEMORIES, [1.0, 0.0], {"is_unstable": False}, point_id="ok")
        store.insert(MEMORIES, [0.0, 1.0], {"is_unstable": True}, point_id="bad")
        hits = store.search(MEMORIES, [1.0, 0.0], filters={"is_unstable": True})
        assert [h.id for h in hits] == ["bad"]

    def test_where_predicate(self, store):
        store.insert(MEMORIES, [1.0], {"n": 1}, point_id="one")
        store.insert(MEMORIES, [1.0], {"n": 5}, point_id="five")
        hits = store.search(MEMORIES, [1.0], where=lambda p: p["n"] > 2)
        assert [h.id for h in hits] == ["five"]

    def test_dimension_mismatch_skipped(self, store):
        store.insert(MEMORIES, [1.0, 0.0, 0.0], {}, point_id="three")
        store.insert(MEMORIES, [1.0, 0.0], {}, point_id="two")
        hits = store.search(MEMORIES, [1.0, 0.0])
        assert [h.id for h in hits] == ["two"]

    def test_empty_vectors_never_match(self, store):
        store.insert(FAILURES, [], {"message": "no vector"}, point_id="f")
        assert store.search(FAILURES, [1.0, 0.0]) == []
        assert store.get(FAILURES, "f").payload["message"] == "no vector"

    def test_empty_collection(self, store):
        assert store.search(MEMORIES, [1.0, 0.0]) == []


class TestCosineDistanceBatch:
    def test_zero_query_is_orthogonal(self):
        import numpy as np

        out = cosine_distance_batch(np.zeros(2), np.array([[1.0, 0.0]]))
        assert out.tolist() == [1.0]

    def test_zero_row_is_orthogonal(self):
        import numpy as np

        out = cosine_distance_batch(np.array([1.0, 0.0]),
                                    np.array([[0.0, 0.0], [1.0, 0.0]]))
        assert out[0] == pytest.approx(1.0)
        assert out[1] == pytest.approx(0.0)


class TestInfo:
    def test_collection_info_counts(self, store):
        store.insert(MEMORIES, [1.0], {})
        store.insert(FAILURES, [1.0], {})
        store.insert(FAILURES, [1.0], {})
        info = store.collection_info()
        assert info[MEMORIES] == 1
        assert info[CLUSTERS] == 0
        assert info[FAILURES] == 2
        assert info["path"].endswith("vault.db")
