"""
Unit tests for pattern_vault.clustering.ClusterIndex
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from pattern_vault.clustering import ClusterIndex, cosine_similarity
from pattern_vault.storage import CLUSTERS


class TestCosineSimilarity:
    def test_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_shape_mismatch(self):
        assert cosine_similarity([1.0], [1.0, 0.0]) == -1.0

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


class TestAssign:
    def test_first_vector_creates_cluster(self, store):
        index = ClusterIndex(store)
        assert index.assign("m1", [1.0, 0.0], "Validates a login") is None
        clusters = index.clusters()
        assert len(clusters) == 1
        assert clusters[0].label == "Validates a login"
        assert clusters[0].member_ids == ["m1"]
        assert clusters[0].usage_count == 1

    def test_similar_vector_joins_and_returns_snapshot(self, store):
        index = ClusterIndex(store, similarity_threshold=0.85)
        index.assign("m1", [1.0, 0.0], "label")
        joined = index.assign("m2", [0.95, 0.1], "other label")

        assert joined is not None
        assert joined.member_ids == ["m1", "m2"]
        assert joined.usage_count == 2
        assert joined.label == "label"

        # snapshot is detached from the index
        joined.member_ids.append("x")
        assert index.clusters()[0].member_ids == ["m1", "m2"]

    def test_dissimilar_vector_creates_new_cluster(self, store):
        index = ClusterIndex(store)
        index.assign("m1", [1.0, 0.0], "a")
        assert index.assign("m2", [0.0, 1.0], "b") is None
        assert len(index) == 2

    def test_centroid_is_running_mean(self, store):
        index = ClusterIndex(store, similarity_threshold=0.5)
        vectors = [[1.0, 0.0, 0.0], [0.9, 0.2, 0.0], [0.8, 0.1, 0.3],
                   [1.0, 0.1, 0.1]]
        for i, v in enumerate(vectors):
            index.assign(f"m{i}", v, "label")

        [cluster] = index.clusters()
        expected = np.mean(np.asarray(vectors), axis=0)
        assert np.allclose(cluster.centroid, expected, atol=1e-6)
        assert cluster.usage_count == len(cluster.member_ids) == 4

    def test_picks_most_similar_cluster(self, store):
        index = ClusterIndex(store, similarity_threshold=0.8)
        index.assign("x", [1.0, 0.0], "x-axis")
        index.assign("y", [0.0, 1.0], "y-axis")
        joined = index.assign("near-y", [0.1, 1.0], "?")
        assert joined.label == "y-axis"

    def test_threshold_is_inclusive(self, store):
        index = ClusterIndex(store, similarity_threshold=1.0)
        index.assign("m1", [1.0, 0.0], "a")
        assert index.assign("m2", [2.0, 0.0], "a") is not None

    def test_concurrent_assigns_keep_running_mean(self, store):
        index = ClusterIndex(store, similarity_threshold=0.5)
        rng = np.random.default_rng(7)
        vectors = (np.array([1.0, 0.0, 0.0]) + 0.1 * rng.random((200, 3))).tolist()

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: index.assign(f"m{i}", vectors[i], "label"),
                          range(len(vectors))))

        [cluster] = index.clusters()
        assert cluster.usage_count == len(cluster.member_ids) == 200
        assert sorted(cluster.member_ids) == sorted(f"m{i}" for i in range(200))
        assert np.allclose(cluster.centroid, np.mean(np.asarray(vectors), axis=0),
                           atol=1e-6)

        reloaded = ClusterIndex(store)
        reloaded.load()
        assert reloaded.get(cluster.id).usage_count == 200


class TestPersistence:
    def test_clusters_persist_and_reload(self, store):
        index = ClusterIndex(store)
        index.assign("m1", [1.0, 0.0], "login")
        index.assign("m2", [1.0, 0.05], "login")
        assert store.count(CLUSTERS) == 1

        reloaded = ClusterIndex(store)
        assert reloaded.load() == 1
        [cluster] = reloaded.clusters()
        assert cluster.member_ids == ["m1", "m2"]
        assert cluster.usage_count == 2
        assert np.allclose(cluster.centroid, [1.0, 0.025], atol=1e-6)
        assert reloaded.get(cluster.id) is not None


class TestAccess:
    def test_record_access_does_not_touch_usage(self, store):
        index = ClusterIndex(store)
        index.assign("m1", [1.0, 0.0], "a")
        cluster = index.record_access("m1")
        assert cluster.access_count == 1
        assert cluster.usage_count == 1
        assert index.record_access("unknown") is None

    def test_cluster_for_memory(self, store):
        index = ClusterIndex(store)
        index.assign("m1", [1.0, 0.0], "a")
        assert index.cluster_for_memory("m1").label == "a"
        assert index.cluster_for_memory("m2") is None
        assert index.get("missing") is None
