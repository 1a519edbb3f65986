"""
Similarity query over stored memories, with a short-lived result cache.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .embeddings import EmbeddingCache, EmbeddingError
from .models import MatchResult, Memory
from .storage import MEMORIES, SQLiteVectorStore, StorageError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_DISTANCE = 0.4
DEFAULT_TOP_K = 10
_CONTEXT_PREVIEW_CHARS = 30


class QueryCache:
    """``query text -> (results, timestamp)`` with a TTL.

    The cache carries a generation number that :meth:`invalidate` bumps.
    A writer passes the generation it observed before computing results;
    :meth:`put` drops the results if an invalidation happened meanwhile.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[list[MatchResult], float]] = {}
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, text: str) -> Optional[list[MatchResult]]:
        with self._lock:
            entry = self._entries.get(text)
            if entry is None:
                return None
            results, stamp = entry
            if self._clock() - stamp >= self._ttl:
                del self._entries[text]
                return None
            return list(results)

    def put(self, text: str, results: list[MatchResult],
            generation: Optional[int] = None) -> bool:
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._entries[text] = (list(results), self._clock())
            return True

    def invalidate(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class QueryEngine:
    """Finds memories semantically close to a piece of text.

    Derived hits (prompt, AI response, pattern abstraction) resolve to the
    memory they belong to and carry a ``match_context`` naming the field
    that matched.  Each memory appears once, at its closest hit.
    """

    def __init__(self, store: SQLiteVectorStore, embedder: EmbeddingCache,
                 cache: Optional[QueryCache] = None,
                 max_distance: float = DEFAULT_MAX_DISTANCE,
                 top_k: int = DEFAULT_TOP_K) -> None:
        self._store = store
        self._embedder = embedder
        self.cache = cache if cache is not None else QueryCache()
        self._max_distance = max_distance
        self._top_k = top_k

    def query(self, text: str) -> list[MatchResult]:
        cached = self.cache.get(text)
        if cached is not None:
            logger.debug("[QueryEngine] Cache hit: %r", text[:60])
            return cached

        generation = self.cache.generation
        logger.debug("[QueryEngine] Searching for: %r", text[:60])
        try:
            vector = self._embedder.embed(text)
            hits = self._store.search(MEMORIES, vector, top_k=self._top_k)
            results = self._resolve(hits)
        except (EmbeddingError, StorageError) as exc:
            logger.warning("[QueryEngine] Query failed: %s", exc)
            return []

        self.cache.put(text, results, generation)
        return results

    def _resolve(self, hits) -> list[MatchResult]:
        kept = [h for h in hits if h.distance <= self._max_distance]
        logger.info("[QueryEngine] Found %d matches (from %d raw)",
                    len(kept), len(hits))

        results: list[MatchResult] = []
        seen: set[str] = set()
        for hit in kept:
            record = Memory.from_payload(hit.id, hit.payload)
            match_context = ""
            if record.is_derived:
                parent = self._store.get(MEMORIES, record.related_id)
                if parent is None:
                    logger.debug("[QueryEngine] Orphan derived record %s skipped",
                                 record.id)
                    continue
                preview = record.content[:_CONTEXT_PREVIEW_CHARS]
                match_context = (
                    f'Matched via {record.vector_type or "related"}: "{preview}..."')
                record = Memory.from_payload(parent.id, parent.payload)

            if record.id in seen:
                continue
            seen.add(record.id)
            results.append(MatchResult.from_memory(record, hit.distance,
                                                   match_context))
        return results
