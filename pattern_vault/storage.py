"""
SQLite-backed vector store for the pattern vault.

Holds three collections in one database file: ``memories``, ``clusters``
and ``failures``, each a table of ``(point_id, vector, payload)`` rows.
Vectors are float32 blobs; payloads are JSON.  Similarity search computes
cosine distance (``1 - cosine similarity``) with numpy and returns hits in
ascending distance order.

Inserts and updates are single upsert statements inside one transaction,
so a record is never observable (or lost) between a delete and a re-insert.

Storage: ``<data_dir>/vault.db``
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

import numpy as np

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MEMORIES = "memories"
CLUSTERS = "clusters"
FAILURES = "failures"
COLLECTIONS = (MEMORIES, CLUSTERS, FAILURES)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS {table} (
    seq        INTEGER PRIMARY KEY AUTOINCREMENT,
    point_id   TEXT NOT NULL UNIQUE,
    vector     BLOB NOT NULL,
    payload    TEXT NOT NULL DEFAULT '{{}}'
);
"""

_CREATE_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_memories_file "
    "ON memories(json_extract(payload, '$.file_path'));",
    "CREATE INDEX IF NOT EXISTS idx_memories_related "
    "ON memories(json_extract(payload, '$.related_id'));",
)

Predicate = Callable[[dict], bool]


class StorageError(Exception):
    """Raised when the underlying SQLite database fails."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A stored point: id, vector and JSON payload."""
    id: str
    vector: list[float]
    payload: dict


@dataclass
class SearchHit:
    """A similarity-search result.  Lower ``distance`` is closer."""
    id: str
    distance: float
    payload: dict
    vector: list[float]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _vec_to_bytes(vec: Iterable[float]) -> bytes:
    return np.asarray(vec, dtype=np.float32).tobytes()


def _bytes_to_vec(buf: bytes) -> np.ndarray:
    return np.frombuffer(buf, dtype=np.float32).copy()


def _decode_payload(payload_json: str) -> dict:
    try:
        payload = json.loads(payload_json)
    except (json.JSONDecodeError, TypeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def cosine_distance_batch(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine distance between *query* (1-D) and each row of *matrix*.

    Zero vectors are treated as orthogonal to everything (distance 1).
    """
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.ones(matrix.shape[0])
    row_norms = np.linalg.norm(matrix, axis=1)
    zero_rows = row_norms == 0
    row_norms[zero_rows] = 1.0
    similarity = (matrix @ query) / (row_norms * query_norm)
    similarity[zero_rows] = 0.0
    return 1.0 - np.clip(similarity, -1.0, 1.0)


def _matches(payload: dict, filters: Optional[dict],
             where: Optional[Predicate]) -> bool:
    if filters:
        for key, expected in filters.items():
            if payload.get(key) != expected:
                return False
    if where is not None and not where(payload):
        return False
    return True


# ---------------------------------------------------------------------------
# SQLiteVectorStore
# ---------------------------------------------------------------------------

class SQLiteVectorStore:
    """Local multi-collection vector store backed by SQLite + numpy.

    Parameters
    ----------
    db_path:
        Path of the SQLite file.  ``":memory:"`` gives a throwaway store.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        """Create the database and tables if missing."""
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self._db_path)),
                        exist_ok=True)
        with self._lock:
            conn = self._get_conn()
            for table in COLLECTIONS:
                conn.executescript(_CREATE_TABLE.format(table=table))
            for statement in _CREATE_INDEXES:
                try:
                    conn.execute(statement)
                except sqlite3.OperationalError:
                    # json_extract not available on older SQLite builds
                    logger.debug("[SQLiteVectorStore] Skipped index: %s", statement)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        """Lazy connection; callers hold ``self._lock``."""
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            if self._db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA synchronous=NORMAL")
        return self._conn

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error as exc:
                    logger.debug("[SQLiteVectorStore] Close failed: %s", exc)
                self._conn = None

    @staticmethod
    def _table(collection: str) -> str:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection!r}")
        return collection

    def _rows(self, collection: str) -> list[tuple[str, bytes, str]]:
        table = self._table(collection)
        with self._lock:
            try:
                return self._get_conn().execute(
                    f"SELECT point_id, vector, payload FROM {table} ORDER BY seq"
                ).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"read from {table} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, collection: str, vector: list[float], payload: dict,
               point_id: Optional[str] = None) -> str:
        """Insert one point and return its id (a new UUID unless given)."""
        point_id = point_id or str(uuid.uuid4())
        self.upsert(collection, [(point_id, vector, payload)])
        return point_id

    def upsert(self, collection: str,
               points: list[tuple[str, list[float], dict]]) -> None:
        """Insert or replace points atomically.

        Parameters
        ----------
        points:
            List of ``(point_id, vector, payload)`` tuples.
        """
        if not points:
            return
        table = self._table(collection)
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    for point_id, vector, payload in points:
                        conn.execute(
                            f"INSERT INTO {table} (point_id, vector, payload) "
                            "VALUES (?, ?, ?) "
                            "ON CONFLICT(point_id) DO UPDATE SET "
                            "vector = excluded.vector, payload = excluded.payload",
                            (point_id, _vec_to_bytes(vector),
                             json.dumps(payload, default=str)),
                        )
            except sqlite3.Error as exc:
                raise StorageError(f"upsert into {table} failed: {exc}") from exc
        logger.debug("[SQLiteVectorStore] Upserted %d points into %s",
                     len(points), table)

    def update(self, collection: str, point_id: str,
               fields: "dict | Callable[[dict], dict]",
               vector: Optional[list[float]] = None) -> Optional[VectorRecord]:
        """Merge *fields* into a point's payload in one transaction.

        *fields* may be a callable that receives a copy of the current
        payload and returns the fields to merge, which makes
        read-modify-write updates (counters) atomic.  The stored vector is
        kept unless *vector* is given.  Returns the updated record, or None
        if *point_id* does not exist.
        """
        table = self._table(collection)
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    row = conn.execute(
                        f"SELECT vector, payload FROM {table} WHERE point_id = ?",
                        (point_id,),
                    ).fetchone()
                    if row is None:
                        return None
                    payload = _decode_payload(row[1])
                    if callable(fields):
                        fields = fields(dict(payload))
                    payload.update(fields)
                    vec_bytes = _vec_to_bytes(vector) if vector is not None else row[0]
                    conn.execute(
                        f"UPDATE {table} SET vector = ?, payload = ? "
                        "WHERE point_id = ?",
                        (vec_bytes, json.dumps(payload, default=str), point_id),
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"update of {table}/{point_id} failed: {exc}") from exc
        return VectorRecord(point_id, _bytes_to_vec(vec_bytes).tolist(), payload)

    def delete(self, collection: str, point_id: str) -> bool:
        """Delete one point by id.  Returns True if a row was removed."""
        table = self._table(collection)
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    cur = conn.execute(
                        f"DELETE FROM {table} WHERE point_id = ?", (point_id,))
            except sqlite3.Error as exc:
                raise StorageError(f"delete from {table} failed: {exc}") from exc
        return cur.rowcount > 0

    def delete_where(self, collection: str, filters: Optional[dict] = None,
                     where: Optional[Predicate] = None) -> int:
        """Delete every point whose payload matches; returns the count.

        With neither *filters* nor *where* nothing is deleted.
        """
        if not filters and where is None:
            return 0
        table = self._table(collection)
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    rows = conn.execute(
                        f"SELECT point_id, payload FROM {table}").fetchall()
                    to_delete = [
                        pid for pid, payload_json in rows
                        if _matches(_decode_payload(payload_json), filters, where)
                    ]
                    if to_delete:
                        placeholders = ",".join("?" for _ in to_delete)
                        conn.execute(
                            f"DELETE FROM {table} WHERE point_id IN ({placeholders})",
                            to_delete,
                        )
            except sqlite3.Error as exc:
                raise StorageError(f"delete from {table} failed: {exc}") from exc
        if to_delete:
            logger.debug("[SQLiteVectorStore] Deleted %d points from %s",
                         len(to_delete), table)
        return len(to_delete)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, collection: str, point_id: str) -> Optional[VectorRecord]:
        table = self._table(collection)
        with self._lock:
            try:
                row = self._get_conn().execute(
                    f"SELECT vector, payload FROM {table} WHERE point_id = ?",
                    (point_id,),
                ).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"read from {table} failed: {exc}") from exc
        if row is None:
            return None
        return VectorRecord(point_id, _bytes_to_vec(row[0]).tolist(),
                            _decode_payload(row[1]))

    def get_many(self, collection: str, point_ids: list[str]) -> list[VectorRecord]:
        """Fetch several points, preserving the order of *point_ids*."""
        records = []
        for pid in point_ids:
            record = self.get(collection, pid)
            if record is not None:
                records.append(record)
        return records

    def all(self, collection: str, filters: Optional[dict] = None,
            where: Optional[Predicate] = None) -> list[VectorRecord]:
        """Every point matching the filters, in insertion order."""
        records = []
        for pid, vec_bytes, payload_json in self._rows(collection):
            payload = _decode_payload(payload_json)
            if _matches(payload, filters, where):
                records.append(
                    VectorRecord(pid, _bytes_to_vec(vec_bytes).tolist(), payload))
        return records

    def search(
        self,
        collection: str,
        query_vector: list[float],
        top_k: int = 10,
        filters: Optional[dict] = None,
        where: Optional[Predicate] = None,
    ) -> list[SearchHit]:
        """Nearest-neighbour search by cosine distance.

        Parameters
        ----------
        query_vector:
            The query embedding vector.
        top_k:
            Number of results to return.
        filters:
            Optional payload equality filters (``{"file_path": ...}``).
        where:
            Optional payload predicate applied after *filters*.

        Returns
        -------
        list[SearchHit]
            At most *top_k* hits, ascending by distance; ties keep
            insertion order.
        """
        if top_k <= 0:
            return []
        query = np.asarray(query_vector, dtype=np.float32)

        candidates: list[tuple[str, np.ndarray, dict]] = []
        for pid, vec_bytes, payload_json in self._rows(collection):
            payload = _decode_payload(payload_json)
            if not _matches(payload, filters, where):
                continue
            vec = _bytes_to_vec(vec_bytes)
            if vec.shape != query.shape:
                logger.debug("[SQLiteVectorStore] Skipping %s: dimension %d != %d",
                             pid, vec.shape[0], query.shape[0])
                continue
            candidates.append((pid, vec, payload))

        if not candidates:
            return []

        matrix = np.stack([c[1] for c in candidates])
        distances = cosine_distance_batch(query, matrix)
        order = np.argsort(distances, kind="stable")[:top_k]
        return [
            SearchHit(
                id=candidates[i][0],
                distance=float(distances[i]),
                payload=candidates[i][2],
                vector=candidates[i][1].tolist(),
            )
            for i in order
        ]

    def count(self, collection: str) -> int:
        table = self._table(collection)
        with self._lock:
            try:
                row = self._get_conn().execute(
                    f"SELECT COUNT(*) FROM {table}").fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"count of {table} failed: {exc}") from exc
        return row[0] if row else 0

    def collection_info(self) -> dict[str, Any]:
        """Point counts per collection plus the database path."""
        info: dict[str, Any] = {"path": self._db_path}
        for collection in COLLECTIONS:
            info[collection] = self.count(collection)
        return info
