"""
Incremental online clustering of pattern-abstraction vectors.

Each cluster keeps a running-mean centroid over the vectors of its
members.  A new vector joins the most similar cluster when cosine
similarity reaches the threshold, otherwise it starts a cluster of its own.

Assignment is a linear scan over all clusters; that is fine for one
developer's pattern vocabulary (low thousands) and is the first thing to
replace with an approximate index if cluster counts grow without bound.

All mutation goes through one lock, so concurrent ingestion threads cannot
lose updates to a centroid.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Optional

import numpy as np

from .models import PatternCluster, new_id, utc_now
from .storage import CLUSTERS, SQLiteVectorStore, StorageError

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY = 0.85


def cosine_similarity(a, b) -> float:
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        return -1.0
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return 0.0
    return float(a @ b / denom)


class ClusterIndex:
    """Arena of :class:`PatternCluster` objects with an ``id -> index`` map.

    Parameters
    ----------
    store:
        Vector store whose ``clusters`` collection persists the arena.
    similarity_threshold:
        Minimum cosine similarity for a vector to join an existing cluster.
    """

    def __init__(self, store: SQLiteVectorStore,
                 similarity_threshold: float = DEFAULT_SIMILARITY) -> None:
        self._store = store
        self._threshold = similarity_threshold
        self._clusters: list[PatternCluster] = []
        self._index: dict[str, int] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Replace the in-memory arena with the persisted clusters."""
        try:
            records = self._store.all(CLUSTERS)
        except StorageError as exc:
            logger.warning("[ClusterIndex] Failed to load clusters: %s", exc)
            return 0
        with self._lock:
            self._clusters = [
                PatternCluster.from_payload(r.id, r.vector, r.payload)
                for r in records
            ]
            self._index = {c.id: i for i, c in enumerate(self._clusters)}
            count = len(self._clusters)
        logger.info("[ClusterIndex] Loaded %d pattern clusters", count)
        return count

    def _persist(self, cluster: PatternCluster) -> None:
        try:
            self._store.upsert(CLUSTERS, [(cluster.id, cluster.centroid,
                                           cluster.to_payload())])
        except StorageError as exc:
            logger.warning("[ClusterIndex] Failed to persist cluster %s: %s",
                           cluster.id, exc)

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign(self, memory_id: str, vector: list[float],
               label: str) -> Optional[PatternCluster]:
        """Place *memory_id* (embedded as *vector*) into a cluster.

        Returns a snapshot of the cluster it joined when this is the reuse
        of a known pattern, or None when a new cluster was created.
        """
        vec = np.asarray(vector, dtype=np.float64)
        with self._lock:
            best: Optional[PatternCluster] = None
            best_sim = -1.0
            for cluster in self._clusters:
                sim = cosine_similarity(vec, cluster.centroid)
                if sim > best_sim:
                    best_sim = sim
                    best = cluster

            if best is not None and best_sim >= self._threshold:
                n = best.usage_count
                centroid = np.asarray(best.centroid, dtype=np.float64)
                best.centroid = ((centroid * n + vec) / (n + 1)).tolist()
                best.member_ids.append(memory_id)
                best.usage_count = len(best.member_ids)
                best.last_used = utc_now()
                self._persist(best)
                logger.info("[ClusterIndex] Assigned %s to pattern %r (sim %.2f)",
                            memory_id, best.label, best_sim)
                return copy.deepcopy(best)

            cluster = PatternCluster(
                id=new_id(),
                label=label,
                centroid=vec.tolist(),
                member_ids=[memory_id],
                usage_count=1,
                last_used=utc_now(),
            )
            self._index[cluster.id] = len(self._clusters)
            self._clusters.append(cluster)
            self._persist(cluster)
            logger.info("[ClusterIndex] Created pattern cluster %r", label)
            return None

    def record_access(self, memory_id: str) -> Optional[PatternCluster]:
        """Note that a member of some cluster was looked at again."""
        with self._lock:
            for cluster in self._clusters:
                if memory_id in cluster.member_ids:
                    cluster.access_count += 1
                    cluster.last_used = utc_now()
                    self._persist(cluster)
                    logger.debug("[ClusterIndex] Access on pattern %r (count %d)",
                                 cluster.label, cluster.access_count)
                    return copy.deepcopy(cluster)
        return None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get(self, cluster_id: str) -> Optional[PatternCluster]:
        with self._lock:
            idx = self._index.get(cluster_id)
            if idx is None:
                return None
            return copy.deepcopy(self._clusters[idx])

    def clusters(self) -> list[PatternCluster]:
        with self._lock:
            return copy.deepcopy(self._clusters)

    def cluster_for_memory(self, memory_id: str) -> Optional[PatternCluster]:
        with self._lock:
            for cluster in self._clusters:
                if memory_id in cluster.member_ids:
                    return copy.deepcopy(cluster)
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._clusters)
