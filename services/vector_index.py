# ──────────────────────────────────────────────────────────────────────────────
# File: services/vector_index.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Vector index backends keyed by record id.

Each entry is (id, vector, metadata); metadata carries owner_id, table and
type. Upsert is last-write-wins per id. Queries return matches ordered by
cosine similarity, highest first, and never filter on metadata: callers
over-fetch and filter the returned metadata themselves.

Backends:
- SqliteVecIndex: sqlite-vec `vec_distance_cosine` over a plain table
- InMemoryVectorIndex: numpy matrix, for development and tests
"""
from __future__ import annotations
import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from config import settings
from services.embeddings import Embeddings
from services.errors import IndexUnavailable

logger = logging.getLogger(__name__)


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorIndex:
    """Interface shared by the index backends."""

    name = "base"

    @property
    def available(self) -> bool:
        return True

    def upsert(self, record_id: str, vector: List[float], metadata: Dict[str, Any]) -> None:
        raise NotImplementedError

    def delete_by_ids(self, ids: Iterable[str]) -> int:
        raise NotImplementedError

    def query(self, vector: List[float], top_k: int = 10, return_metadata: bool = True) -> List[VectorMatch]:
        raise NotImplementedError

    def list_ids(self) -> List[str]:
        raise NotImplementedError

    def count(self) -> int:
        return len(self.list_ids())

    def close(self) -> None:
        pass


class InMemoryVectorIndex(VectorIndex):
    name = "memory"

    def __init__(self):
        self._entries: Dict[str, tuple[np.ndarray, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def upsert(self, record_id, vector, metadata):
        arr = np.asarray(vector, dtype=np.float32)
        with self._lock:
            self._entries[record_id] = (arr, dict(metadata or {}))

    def delete_by_ids(self, ids):
        removed = 0
        with self._lock:
            for record_id in ids:
                if self._entries.pop(record_id, None) is not None:
                    removed += 1
        return removed

    def query(self, vector, top_k=10, return_metadata=True):
        query = np.asarray(vector, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))
        with self._lock:
            entries = [
                (record_id, arr, meta)
                for record_id, (arr, meta) in self._entries.items()
                if arr.shape == query.shape
            ]
        if not entries or query_norm == 0.0 or top_k <= 0:
            return []

        matrix = np.stack([arr for _, arr, _ in entries])
        norms = np.linalg.norm(matrix, axis=1) * query_norm
        with np.errstate(divide='ignore', invalid='ignore'):
            scores = np.where(norms > 0, matrix @ query / norms, 0.0)

        order = np.argsort(-scores, kind='stable')[:top_k]
        return [
            VectorMatch(
                id=entries[i][0],
                score=float(scores[i]),
                metadata=dict(entries[i][2]) if return_metadata else {},
            )
            for i in order
        ]

    def list_ids(self):
        with self._lock:
            return list(self._entries.keys())


class SqliteVecIndex(VectorIndex):
    """Durable index using the sqlite-vec extension for distance math."""

    name = "sqlite_vec"

    def __init__(self, db_path: str, vec_ext_path: Optional[str] = None):
        self.db_path = db_path
        self.vec_ext_path = vec_ext_path or settings.sqlite_vec_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self.vec_available = self._enable_extensions()
        self._ensure_table()

    def _enable_extensions(self) -> bool:
        try:
            self.conn.enable_load_extension(True)
        except (AttributeError, sqlite3.Error) as e:
            logger.warning(f"[vector-index] extension loading not supported: {e}")
            return False

        path = self.vec_ext_path
        if path:
            try:
                self.conn.load_extension(path)
                return True
            except sqlite3.Error as e:
                logger.warning(f"[vector-index] sqlite-vec load failed for {path}: {e}")
        try:
            import sqlite_vec
            sqlite_vec.load(self.conn)
            return True
        except Exception as e:
            logger.warning(f"[vector-index] sqlite-vec not enabled: {e}")
            return False
        finally:
            try:
                self.conn.enable_load_extension(False)
            except sqlite3.Error:
                pass

    def _ensure_table(self):
        with self._lock:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS vector_index (
                    id TEXT PRIMARY KEY,
                    embedding BLOB NOT NULL,
                    dim INTEGER NOT NULL,
                    metadata_json TEXT,
                    updated_at INTEGER NOT NULL
                )
            """)
            self.conn.commit()

    @property
    def available(self) -> bool:
        return self.vec_available

    def _require(self):
        if not self.vec_available:
            raise IndexUnavailable("sqlite-vec extension is not loaded")

    def upsert(self, record_id, vector, metadata):
        self._require()
        blob = sqlite3.Binary(Embeddings.pack_f32(vector))
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO vector_index (id, embedding, dim, metadata_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    embedding = excluded.embedding,
                    dim = excluded.dim,
                    metadata_json = excluded.metadata_json,
                    updated_at = excluded.updated_at
                """,
                (record_id, blob, len(vector), json.dumps(metadata or {}), int(time.time() * 1000)),
            )
            self.conn.commit()

    def delete_by_ids(self, ids):
        self._require()
        ids = list(ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            cur = self.conn.execute(f"DELETE FROM vector_index WHERE id IN ({placeholders})", ids)
            self.conn.commit()
            return cur.rowcount

    def query(self, vector, top_k=10, return_metadata=True):
        self._require()
        if top_k <= 0:
            return []
        blob = sqlite3.Binary(Embeddings.pack_f32(vector))
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT id, metadata_json, 1.0 - vec_distance_cosine(embedding, ?) AS score
                FROM vector_index
                WHERE dim = ?
                ORDER BY score DESC
                LIMIT ?
                """,
                (blob, len(vector), top_k),
            ).fetchall()

        matches = []
        for row in rows:
            metadata = json.loads(row["metadata_json"] or "{}") if return_metadata else {}
            score = row["score"]
            matches.append(VectorMatch(id=row["id"], score=float(score) if score is not None else 0.0, metadata=metadata))
        return matches

    def list_ids(self):
        self._require()
        with self._lock:
            return [row["id"] for row in self.conn.execute("SELECT id FROM vector_index")]

    def close(self):
        with self._lock:
            self.conn.close()


def build_vector_index(backend: Optional[str] = None, db_path: Optional[str] = None) -> Optional[VectorIndex]:
    """Construct the configured backend; None disables the index entirely."""
    backend = (backend or settings.vector_index_backend or "none").lower()
    if backend == "memory":
        return InMemoryVectorIndex()
    if backend == "sqlite_vec":
        index = SqliteVecIndex(db_path or str(settings.db_path))
        if not index.available:
            logger.warning("[vector-index] sqlite-vec unavailable, searches will use the legacy scan")
        return index
    if backend != "none":
        logger.warning(f"[vector-index] unknown backend '{backend}', index disabled")
    return None
