"""
Failure correlation: ties runtime, test and process failures back to the
stored memory that most plausibly caused them.

A failure message is embedded and matched against the memories of the
file it occurred in.  By default the nearest memory is blamed whatever its
distance, so links are a hint rather than a proof; set a maximum link
distance to make them stricter.  A memory blamed often enough is flagged
unstable, and new code resembling it raises a risk alert at ingestion.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from .embeddings import EmbeddingCache, EmbeddingError
from .models import FailureEvent, FailureKind, Memory, VectorType, new_id, utc_now
from .storage import FAILURES, MEMORIES, SQLiteVectorStore, StorageError

logger = logging.getLogger(__name__)

DEFAULT_UNSTABLE_COUNT = 3
DEFAULT_MESSAGE_CHARS = 1000
DEFAULT_SIMILAR_K = 5
DEFAULT_CHURN_WINDOW_MINUTES = 10

_WHITESPACE = re.compile(r"\s+")


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


class FailureCorrelator:
    """Records failure events and maintains per-memory failure statistics.

    Parameters
    ----------
    store:
        Vector store holding the ``memories`` and ``failures`` collections.
    embedder:
        Embedding cache used for failure messages.
    unstable_failure_count:
        Failure count at which a memory becomes unstable.
    max_link_distance:
        Optional cosine-distance cutoff for blaming a memory; None accepts
        the nearest memory in the file.
    """

    def __init__(
        self,
        store: SQLiteVectorStore,
        embedder: EmbeddingCache,
        unstable_failure_count: int = DEFAULT_UNSTABLE_COUNT,
        message_chars: int = DEFAULT_MESSAGE_CHARS,
        similar_k: int = DEFAULT_SIMILAR_K,
        churn_window_minutes: float = DEFAULT_CHURN_WINDOW_MINUTES,
        max_link_distance: Optional[float] = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._unstable_count = unstable_failure_count
        self._message_chars = message_chars
        self._similar_k = similar_k
        self._churn_window = churn_window_minutes
        self._max_link_distance = max_link_distance

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _embed_message(self, message: str) -> Optional[list[float]]:
        try:
            return self._embedder.embed(message[:self._message_chars])
        except EmbeddingError as exc:
            logger.warning("[FailureCorrelator] Cannot embed failure message: %s", exc)
            return None

    def _link(self, vector: list[float], file_path: str) -> str:
        """Id of the code memory in *file_path* nearest to *vector*, or ''."""
        try:
            hits = self._store.search(
                MEMORIES, vector, top_k=1,
                filters={"file_path": file_path,
                         "vector_type": VectorType.CODE.value},
            )
        except StorageError as exc:
            logger.warning("[FailureCorrelator] Semantic linking failed: %s", exc)
            return ""
        if not hits:
            return ""
        hit = hits[0]
        if self._max_link_distance is not None and hit.distance > self._max_link_distance:
            logger.debug("[FailureCorrelator] Nearest memory %s too far (%.3f)",
                         hit.id, hit.distance)
            return ""
        return hit.id

    def _bump_failure_count(self, memory_id: str, timestamp: str) -> Optional[Memory]:
        threshold = self._unstable_count

        def _fields(payload: dict) -> dict:
            count = int(payload.get("failure_count", 0)) + 1
            return {
                "failure_count": count,
                "last_failure": timestamp,
                "is_unstable": count >= threshold,
            }

        try:
            record = self._store.update(MEMORIES, memory_id, _fields)
        except StorageError as exc:
            logger.warning("[FailureCorrelator] Failed to update memory stats: %s", exc)
            return None
        if record is None:
            return None
        memory = Memory.from_payload(record.id, record.payload)
        logger.info("[FailureCorrelator] Memory %s failure count is now %d%s",
                    memory_id, memory.failure_count,
                    " (unstable)" if memory.is_unstable else "")
        return memory

    def record_failure(self, kind: "FailureKind | str", message: str,
                       file_path: str) -> Optional[FailureEvent]:
        """Record a failure and blame the closest memory in *file_path*.

        Returns None without recording anything when *kind* is not a
        known failure kind.
        """
        try:
            kind = FailureKind(kind)
        except ValueError:
            logger.warning("[FailureCorrelator] Ignoring failure of unknown kind %r", kind)
            return None
        event = FailureEvent(
            id=new_id(),
            kind=kind.value,
            message=message,
            file_path=file_path,
            timestamp=utc_now(),
        )

        vector = self._embed_message(message)
        if vector is not None:
            event.related_memory_id = self._link(vector, file_path)

        try:
            self._store.insert(FAILURES, vector or [], event.to_payload(),
                               point_id=event.id)
        except StorageError as exc:
            logger.warning("[FailureCorrelator] Failed to log failure event: %s", exc)

        if event.related_memory_id:
            self._bump_failure_count(event.related_memory_id, event.timestamp)

        logger.info("[FailureCorrelator] Recorded %s failure in %s (linked: %s)",
                    kind.value, os.path.basename(file_path),
                    "yes" if event.related_memory_id else "no")
        return event

    def find_similar_failures(self, message: str) -> list[FailureEvent]:
        """Past failure events whose messages resemble *message*."""
        vector = self._embed_message(message)
        if vector is None:
            return []
        try:
            hits = self._store.search(FAILURES, vector, top_k=self._similar_k)
        except StorageError as exc:
            logger.warning("[FailureCorrelator] Failure search failed: %s", exc)
            return []
        return [FailureEvent.from_payload(h.id, h.payload) for h in hits]

    def failures_for_memory(self, memory_id: str) -> list[FailureEvent]:
        try:
            records = self._store.all(FAILURES,
                                      filters={"related_memory_id": memory_id})
        except StorageError as exc:
            logger.warning("[FailureCorrelator] Failure lookup failed: %s", exc)
            return []
        return [FailureEvent.from_payload(r.id, r.payload) for r in records]

    # ------------------------------------------------------------------
    # Churn
    # ------------------------------------------------------------------

    def recent_memories(self, file_path: str) -> list[Memory]:
        """Code memories of *file_path* created inside the churn window."""
        cutoff = (datetime.now(timezone.utc)
                  - timedelta(minutes=self._churn_window)).isoformat()
        records = self._store.all(
            MEMORIES,
            filters={"file_path": file_path, "vector_type": VectorType.CODE.value},
            where=lambda p: p.get("timestamp", "") > cutoff,
        )
        return [Memory.from_payload(r.id, r.payload) for r in records]

    def check_for_churn(self, file_path: str,
                        current_content: str) -> list[FailureEvent]:
        """Record a process failure for each recent memory whose code vanished.

        Must run before the new content is indexed, so the memories
        compared are the ones from the previous state of the file.
        """
        try:
            recent = self.recent_memories(file_path)
        except StorageError as exc:
            logger.warning("[FailureCorrelator] Error checking churn: %s", exc)
            return []

        current = normalize_whitespace(current_content)
        events = []
        for memory in recent:
            if normalize_whitespace(memory.content) in current:
                continue
            events.append(self.record_failure(
                FailureKind.PROCESS,
                f"Silent churn: recent code memory (ID: {memory.id}) "
                f"deleted or modified silently.",
                file_path,
            ))
            logger.info("[FailureCorrelator] Churn detected: memory %s gone", memory.id)
        return events
