"""
PatternEngine: composition root of the pattern vault.

Wires the storage backend, embedding cache, LLM assistant, chunker,
exclusion policy, edit tracker, cluster index, query engine and failure
correlator together, and implements the ingestion pipeline:

    exclude? -> invalidate query cache -> churn check -> chunk
        -> per chunk, in parallel: embed -> dedup -> summarize/abstract
           -> conversation link -> persist -> risk check
           -> abstraction vector + clustering -> AI response vector

Nothing is a process-wide singleton; whoever builds the engine owns every
collaborator's lifetime.  Public operations log provider and storage
failures and return empty or partial results instead of raising.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import fields as dataclass_fields
from typing import Optional

from .assistant import PatternAssistant
from .chunker import StructuralChunker
from .clustering import ClusterIndex
from .config import Config
from .embeddings import EmbeddingCache, EmbeddingError, create_embedding_provider
from .exclusions import ExclusionPolicy
from .failures import FailureCorrelator
from .llm import create_llm_client
from .models import (
    Chunk, FailureEvent, FailureKind, MatchResult, Memory, MemoryInput,
    PatternCluster, RiskAlert, Source, StoreResult, VectorType, new_id, utc_now,
)
from .query import QueryCache, QueryEngine
from .storage import MEMORIES, SQLiteVectorStore, StorageError
from .tracker import EditTracker

logger = logging.getLogger(__name__)

_MEMORY_FIELDS = {f.name for f in dataclass_fields(Memory)} - {"id"}

_CONTEXT_FIELDS = {
    "prompt": "",
    "pasted_response": "",
    "conversation_id": "",
    "source": Source.HUMAN.value,
    "match_context": "",
}


class PatternEngine:
    """Semantic memory of code fragments, their context and their failures."""

    def __init__(
        self,
        config: Config,
        store: SQLiteVectorStore,
        embedder: EmbeddingCache,
        assistant: PatternAssistant,
        chunker: Optional[StructuralChunker] = None,
        exclusions: Optional[ExclusionPolicy] = None,
        tracker: Optional[EditTracker] = None,
    ) -> None:
        self.config = config
        self.vector_store = store
        self.embedder = embedder
        self.assistant = assistant
        self.chunker = chunker if chunker is not None else StructuralChunker()
        self.exclusions = (exclusions if exclusions is not None
                           else ExclusionPolicy(config.EXCLUDED_PATHS))
        self.tracker = tracker if tracker is not None else EditTracker()
        self.tracker.set_edit_callback(
            lambda record_id, text: self.update_memory(record_id,
                                                       final_edited_code=text))

        self.clusters = ClusterIndex(store, config.CLUSTER_SIMILARITY)
        self.query_cache = QueryCache(ttl_seconds=config.QUERY_CACHE_TTL)
        self.query_engine = QueryEngine(
            store, embedder, self.query_cache,
            max_distance=config.QUERY_DISTANCE, top_k=config.QUERY_TOP_K)
        self.failures = FailureCorrelator(
            store, embedder,
            unstable_failure_count=config.UNSTABLE_FAILURE_COUNT,
            message_chars=config.FAILURE_MESSAGE_CHARS,
            similar_k=config.SIMILAR_FAILURES_K,
            churn_window_minutes=config.CHURN_WINDOW_MINUTES,
            max_link_distance=config.FAILURE_LINK_MAX_DISTANCE,
        )

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "PatternEngine":
        """Build an engine with the providers named in *config* and load it."""
        cfg = config or Config.load()
        store = SQLiteVectorStore(cfg.db_path)
        embedder = EmbeddingCache(create_embedding_provider(cfg),
                                  capacity=cfg.EMBEDDING_CACHE_SIZE)
        assistant = PatternAssistant(create_llm_client(cfg),
                                     timeout=cfg.LLM_TIMEOUT,
                                     intent_timeout=cfg.INTENT_TIMEOUT)
        engine = cls(cfg, store, embedder, assistant)
        engine.init()
        return engine

    def init(self) -> None:
        self.clusters.load()

    def close(self) -> None:
        self.vector_store.close()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def store(self, memory: MemoryInput) -> list[StoreResult]:
        """Chunk, deduplicate, embed and persist *memory*.

        Returns one result per stored chunk; exact duplicates, tiny chunks
        and failed chunks contribute nothing.
        """
        if self.exclusions.is_excluded(memory.file_path):
            return []
        if not memory.content or not memory.content.strip():
            return []

        self.query_cache.invalidate()
        logger.info("[PatternEngine] Storing code from %s",
                    os.path.basename(memory.file_path))

        self.failures.check_for_churn(memory.file_path, memory.content)

        try:
            pieces = self.chunker.split(memory.content, memory.file_path)
        except Exception:
            logger.exception("[PatternEngine] Error splitting %s", memory.file_path)
            return []
        chunks = [c for c in pieces if len(c.content) >= self.config.MIN_CHUNK_CHARS]
        if not chunks:
            return []

        workers = max(1, min(len(chunks), self.config.MAX_WORKERS))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._store_chunk, memory, chunk, index)
                       for index, chunk in enumerate(chunks)]
            results = [f.result() for f in futures]

        self.query_cache.invalidate()
        return [r for r in results if r is not None]

    def _store_chunk(self, memory: MemoryInput, chunk: Chunk,
                     index: int) -> Optional[StoreResult]:
        try:
            return self._index_chunk(memory, chunk, index)
        except Exception:
            logger.exception("[PatternEngine] Error saving chunk %d of %s",
                             index, memory.file_path)
            return None

    def _index_chunk(self, memory: MemoryInput, chunk: Chunk,
                     index: int) -> Optional[StoreResult]:
        language = memory.language or chunk.language
        vector = self.embedder.embed(f"{language}: {chunk.content}")

        # Dedup against existing code vectors
        similar: Optional[Memory] = None
        similar_distance: Optional[float] = None
        neighbours = self.vector_store.search(
            MEMORIES, vector, top_k=1,
            filters={"vector_type": VectorType.CODE.value})
        if neighbours and neighbours[0].distance < self.config.SIMILAR_DISTANCE:
            nearest = neighbours[0]
            if nearest.distance < self.config.DEDUP_DISTANCE:
                logger.debug("[PatternEngine] Skipped duplicate chunk %d: %r",
                             index, chunk.content[:20])
                return None
            similar = Memory.from_payload(nearest.id, nearest.payload)
            similar_distance = nearest.distance

        summary = self.assistant.summarize(chunk.content) or ""
        description = self.assistant.abstract_pattern(chunk.content) or ""

        conversation_id = memory.conversation_id
        source = Source(memory.source).value
        if not conversation_id:
            found = self.tracker.lookup_conversation(
                chunk.file_path, chunk.start_line, chunk.end_line)
            if found:
                conversation_id = found
                source = Source.AI.value
                logger.info("[PatternEngine] Linked chunk %d to conversation %s",
                            index, found)

        record = Memory(
            id=new_id(),
            content=chunk.content,
            file_path=chunk.file_path,
            language=language,
            workspace_name=memory.workspace_name,
            timestamp=utc_now(),
            summary=summary,
            project_path=chunk.project_path,
            prompt=memory.prompt,
            failure_log=memory.failure_log,
            source=source,
            confidence=memory.confidence,
            conversation_id=conversation_id,
            pasted_response=memory.pasted_response,
            final_edited_code=memory.final_edited_code,
            pattern_description=description,
        )
        self.vector_store.insert(MEMORIES, vector, record.to_payload(), point_id=record.id)

        risk_alert = self._check_risk(record.id, vector)

        matched_cluster: Optional[PatternCluster] = None
        if description:
            try:
                pattern_vector = self._save_derived(
                    record, VectorType.PATTERN_ABSTRACTION, description)
                matched_cluster = self.clusters.assign(
                    record.id, pattern_vector, description)
            except (EmbeddingError, StorageError) as exc:
                logger.warning("[PatternEngine] Failed to index pattern abstraction: %s",
                               exc)

        if memory.pasted_response:
            try:
                self._save_derived(record, VectorType.AI_RESPONSE,
                                   memory.pasted_response)
            except (EmbeddingError, StorageError) as exc:
                logger.warning("[PatternEngine] Failed to index AI response: %s", exc)

        logger.info("[PatternEngine] Saved chunk %d as %s (summary: %s)",
                    index, record.id, "yes" if summary else "no")
        return StoreResult(
            memory=record,
            similar=similar,
            similar_distance=similar_distance,
            matched_cluster=matched_cluster,
            risk_alert=risk_alert,
        )

    def _save_derived(self, parent: Memory, vector_type: VectorType,
                      text: str) -> list[float]:
        """Embed *text* and store it as a record pointing at *parent*."""
        vector = self.embedder.embed(text)
        derived = Memory(**{**parent.to_payload(), "id": new_id()})
        derived.content = text
        derived.vector_type = vector_type.value
        derived.related_id = parent.id
        derived.timestamp = utc_now()
        self.vector_store.insert(MEMORIES, vector, derived.to_payload(), point_id=derived.id)
        logger.debug("[PatternEngine] Indexed %s vector for %s",
                     vector_type.value, parent.id)
        return vector

    def _check_risk(self, memory_id: str, vector: list[float]) -> Optional[RiskAlert]:
        try:
            hits = self.vector_store.search(
                MEMORIES, vector, top_k=1,
                filters={"is_unstable": True, "vector_type": VectorType.CODE.value},
            )
        except StorageError as exc:
            logger.warning("[PatternEngine] Error checking risk: %s", exc)
            return None
        if not hits or hits[0].distance >= self.config.RISK_DISTANCE:
            return None
        unstable = Memory.from_payload(hits[0].id, hits[0].payload)
        logger.warning("[PatternEngine] Risk: %s resembles unstable pattern %s",
                       memory_id, unstable.id)
        return RiskAlert(
            memory_id=unstable.id,
            failure_count=unstable.failure_count,
            message=(f"Caution: similar to a pattern marked unstable "
                     f"(failed {unstable.failure_count} times)."),
        )

    # ------------------------------------------------------------------
    # Memory management
    # ------------------------------------------------------------------

    def get_pattern_details(self, memory_id: str) -> Optional[Memory]:
        try:
            record = self.vector_store.get(MEMORIES, memory_id)
        except StorageError as exc:
            logger.warning("[PatternEngine] Lookup of %s failed: %s", memory_id, exc)
            return None
        if record is None:
            return None
        return Memory.from_payload(record.id, record.payload)

    def update_memory(self, memory_id: str, **updates) -> Optional[Memory]:
        """Merge *updates* into a memory's fields; the vector is kept.

        A new non-empty ``prompt`` is also embedded and stored as a derived
        prompt record so the memory can be found by its intent.
        """
        unknown = set(updates) - _MEMORY_FIELDS
        if unknown:
            raise ValueError(f"Unknown memory fields: {sorted(unknown)}")
        if "source" in updates:
            updates["source"] = Source(updates["source"]).value

        current = self.get_pattern_details(memory_id)
        if current is None:
            return None

        prompt = updates.get("prompt")
        if prompt and prompt != current.prompt:
            merged = Memory(**{**current.to_payload(), **updates, "id": current.id})
            try:
                self._save_derived(merged, VectorType.PROMPT, prompt)
            except (EmbeddingError, StorageError) as exc:
                logger.warning("[PatternEngine] Failed to index prompt for %s: %s",
                               memory_id, exc)

        try:
            record = self.vector_store.update(MEMORIES, memory_id, updates)
        except StorageError as exc:
            logger.warning("[PatternEngine] Update of %s failed: %s", memory_id, exc)
            return None
        self.query_cache.invalidate()
        if record is None:
            return None
        return Memory.from_payload(record.id, record.payload)

    def forget_context(self, memory_id: str) -> bool:
        """Strip AI context from a memory and drop its derived vectors."""
        if self.update_memory(memory_id, **_CONTEXT_FIELDS) is None:
            return False
        try:
            removed = self.vector_store.delete_where(MEMORIES,
                                              filters={"related_id": memory_id})
        except StorageError as exc:
            logger.warning("[PatternEngine] Failed to delete context vectors: %s", exc)
            return False
        self.query_cache.invalidate()
        logger.info("[PatternEngine] Deleted %d related context vectors for %s",
                    removed, memory_id)
        return True

    def delete_memory(self, memory_id: str) -> bool:
        """Delete a memory together with every derived record pointing at it."""
        try:
            deleted = self.vector_store.delete(MEMORIES, memory_id)
            derived = self.vector_store.delete_where(MEMORIES,
                                              filters={"related_id": memory_id})
        except StorageError as exc:
            logger.warning("[PatternEngine] Failed to delete memory %s: %s",
                           memory_id, exc)
            return False
        self.query_cache.invalidate()
        if deleted:
            logger.info("[PatternEngine] Deleted memory %s (+%d derived)",
                        memory_id, derived)
        return deleted

    def trust_pattern(self, memory_id: str) -> bool:
        try:
            record = self.vector_store.update(MEMORIES, memory_id, {"is_trusted": True})
        except StorageError as exc:
            logger.warning("[PatternEngine] Error trusting pattern %s: %s",
                           memory_id, exc)
            return False
        if record is not None:
            logger.info("[PatternEngine] User trusted pattern %s", memory_id)
        return record is not None

    def infer_intent(self, code: str) -> Optional[str]:
        return self.assistant.infer_intent(code)

    def register_ai_region(self, file_path: str, start_line: int, end_line: int,
                           conversation_id: str, record_id: str = "",
                           content: str = "") -> None:
        self.tracker.register_region(file_path, start_line, end_line,
                                     conversation_id, record_id, content)

    def record_edit(self, file_path: str, start_line: int, end_line: int,
                    new_content: str) -> int:
        return self.tracker.record_edit(file_path, start_line, end_line, new_content)

    def clear_ai_regions(self, file_path: Optional[str] = None) -> None:
        """Forget tracked AI regions of *file_path*, or of every file."""
        self.tracker.clear(file_path)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def query(self, text: str) -> list[MatchResult]:
        return self.query_engine.query(text)

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    def assign(self, memory_id: str, vector: list[float],
               label: str) -> Optional[PatternCluster]:
        return self.clusters.assign(memory_id, vector, label)

    def get_clusters(self) -> list[PatternCluster]:
        return self.clusters.clusters()

    def get_cluster(self, cluster_id: str) -> Optional[PatternCluster]:
        return self.clusters.get(cluster_id)

    def record_pattern_access(self, memory_id: str) -> Optional[PatternCluster]:
        return self.clusters.record_access(memory_id)

    def get_memory_cluster(self, memory_id: str) -> Optional[PatternCluster]:
        return self.clusters.cluster_for_memory(memory_id)

    def get_cluster_memories(self, cluster_id: str) -> list[Memory]:
        cluster = self.clusters.get(cluster_id)
        if cluster is None:
            return []
        logger.debug("[PatternEngine] Fetching %d memories for cluster %r",
                     len(cluster.member_ids), cluster.label)
        try:
            records = self.vector_store.get_many(MEMORIES, cluster.member_ids)
        except StorageError as exc:
            logger.warning("[PatternEngine] Error fetching cluster memories: %s", exc)
            return []
        return [Memory.from_payload(r.id, r.payload) for r in records]

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    def record_failure(self, kind: "FailureKind | str", message: str,
                       file_path: str) -> Optional[FailureEvent]:
        return self.failures.record_failure(kind, message, file_path)

    def find_similar_failures(self, message: str) -> list[FailureEvent]:
        return self.failures.find_similar_failures(message)

    def check_for_churn(self, file_path: str, content: str) -> list[FailureEvent]:
        return self.failures.check_for_churn(file_path, content)
