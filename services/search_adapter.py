# ──────────────────────────────────────────────────────────────────────────────
# File: services/search_adapter.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Retrieval over memory and post records.

Three paths, tried in this order:
- vector index: over-fetch top_k * 3 (max 50) matches, filter table, then
  owner, then score in memory, truncate to top_k, join back to records
- legacy scan: cosine similarity over the 100 newest stored vectors
- keyword: OR of LIKE matches on extracted keywords, newest first, unranked

The index path falls back to the legacy scan whenever the index is missing or
fails. Keyword search is used when no query embedding can be produced.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from config import settings
from services.embeddings import Embeddings
from services.errors import EmbeddingUnavailable, ErrorKind, InvalidRequest
from services.record_store import Record, RecordStore, check_table
from services.vector_index import VectorIndex

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset("""
    a an and are as at be by for from has he in is it its of on that the to
    was will with this but they have had what when where who which why how
""".split())
MAX_KEYWORDS = 20

_PUNCTUATION = re.compile(r"[^\w\s]")

METHOD_VECTOR_INDEX = "vector_index"
METHOD_LEGACY = "legacy"
METHOD_KEYWORD = "keyword"


def extract_keywords(text: Optional[str]) -> List[str]:
    """Lowercased, punctuation-free words longer than 3 chars, minus stop words, deduped, max 20."""
    if not text:
        return []
    words = _PUNCTUATION.sub(" ", text.lower()).split()
    keywords: List[str] = []
    seen = set()
    for word in words:
        if len(word) <= 3 or word in STOP_WORDS or word in seen:
            continue
        seen.add(word)
        keywords.append(word)
        if len(keywords) >= MAX_KEYWORDS:
            break
    return keywords


def cosine_similarity(a: List[float], b: List[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector dimension mismatch: {len(a)} vs {len(b)}")
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


@dataclass
class SearchHit:
    record: Record
    similarity: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.record.to_dict()
        data["similarity"] = self.similarity
        return data


@dataclass
class SearchResponse:
    query: str
    table: str
    search_method: str
    results: List[SearchHit] = field(default_factory=list)
    ranked: bool = True
    keywords: List[str] = field(default_factory=list)
    fallback_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "query": self.query,
            "table": self.table,
            "search_method": self.search_method,
            "ranked": self.ranked,
            "fallback_reason": self.fallback_reason,
            "keywords": self.keywords,
            "count": len(self.results),
            "results": [hit.to_dict() for hit in self.results],
        }


class SearchService:
    def __init__(
        self,
        store: RecordStore,
        embeddings: Embeddings,
        index: Optional[VectorIndex] = None,
        overfetch_multiplier: Optional[int] = None,
        overfetch_cap: Optional[int] = None,
        legacy_scan_limit: Optional[int] = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.index = index
        self.overfetch_multiplier = overfetch_multiplier or settings.search_overfetch_multiplier
        self.overfetch_cap = overfetch_cap or settings.search_overfetch_cap
        self.legacy_scan_limit = legacy_scan_limit or settings.legacy_scan_limit

    @property
    def index_available(self) -> bool:
        return self.index is not None and self.index.available

    # ─── Entry points ────────────────────────────────────────────────────────
    async def search(
        self,
        owner_id: str,
        query: str,
        table: str = "memory",
        top_k: int = 10,
        min_score: float = 0.7,
        use_legacy: bool = False,
    ) -> SearchResponse:
        """Semantic search, degrading to keyword search without a query embedding."""
        if not query or not query.strip():
            raise InvalidRequest("Query is required")
        check_table(table)

        try:
            vector = await self.embed_query(query)
        except EmbeddingUnavailable:
            logger.warning(f"[{ErrorKind.EMBEDDING_UNAVAILABLE.value}] falling back to keyword search")
            keywords, hits = self.keyword_search(owner_id, query, table, top_k)
            return SearchResponse(
                query=query,
                table=table,
                search_method=METHOD_KEYWORD,
                results=hits,
                ranked=False,
                keywords=keywords,
                fallback_reason=ErrorKind.EMBEDDING_UNAVAILABLE.value,
            )

        method, hits = self.rank(vector, owner_id, table, top_k, min_score, use_legacy)
        return SearchResponse(query=query, table=table, search_method=method, results=hits)

    async def embed_query(self, query: str) -> List[float]:
        vector = await self.embeddings.embed(query)
        if vector is None:
            raise EmbeddingUnavailable("Could not generate an embedding for the query")
        return vector

    def rank(
        self,
        vector: List[float],
        owner_id: str,
        table: str,
        top_k: int = 10,
        min_score: float = 0.7,
        use_legacy: bool = False,
    ) -> Tuple[str, List[SearchHit]]:
        """Index path when possible, legacy scan otherwise. Returns (method, hits)."""
        if not use_legacy:
            if not self.index_available:
                logger.info(f"[{ErrorKind.INDEX_UNAVAILABLE.value}] vector index not configured, using legacy scan")
            else:
                try:
                    return METHOD_VECTOR_INDEX, self.vector_search(vector, owner_id, table, top_k, min_score)
                except Exception as e:
                    logger.warning(f"[{ErrorKind.INDEX_UNAVAILABLE.value}] vector index query failed, using legacy scan: {e}")
        return METHOD_LEGACY, self.semantic_search_legacy(vector, owner_id, table, top_k, min_score)

    # ─── Vector index path ───────────────────────────────────────────────────
    def vector_search(
        self,
        vector: List[float],
        owner_id: Optional[str] = None,
        table: Optional[str] = None,
        top_k: int = 10,
        min_score: float = 0.7,
    ) -> List[SearchHit]:
        if self.index is None:
            raise InvalidRequest("No vector index configured")
        fetch_k = min(top_k * self.overfetch_multiplier, self.overfetch_cap)
        candidates = self.index.query(vector, top_k=fetch_k, return_metadata=True)

        # Filter order matters: table, owner, then score
        if table is not None:
            candidates = [m for m in candidates if m.metadata.get("table") == table]
        if owner_id is not None:
            candidates = [m for m in candidates if m.metadata.get("owner_id") == owner_id]
        candidates = [m for m in candidates if m.score >= min_score][:top_k]
        if not candidates:
            return []

        by_table: Dict[str, List[str]] = {}
        for match in candidates:
            by_table.setdefault(table or match.metadata.get("table", "memory"), []).append(match.id)
        records: Dict[str, Record] = {}
        for tbl, ids in by_table.items():
            records.update(self.store.get_many(tbl, ids, owner_id))

        hits: List[SearchHit] = []
        drifted = []
        for match in candidates:
            record = records.get(match.id)
            if record is None:
                drifted.append(match.id)
                continue
            if record.embedding_model != self.embeddings.model_id:
                logger.debug(f"Skipping {record.id}: embedded with {record.embedding_model}")
                continue
            hits.append(SearchHit(record=record, similarity=match.score))

        if drifted:
            logger.warning(f"[{ErrorKind.DRIFTED_INDEX_ENTRY.value}] {len(drifted)} index hits without records: {drifted[:5]}")
        return hits

    # ─── Legacy brute-force path ─────────────────────────────────────────────
    def semantic_search_legacy(
        self,
        vector: List[float],
        owner_id: str,
        table: str = "memory",
        limit: int = 10,
        min_similarity: float = 0.7,
    ) -> List[SearchHit]:
        candidates = self.store.list_with_embeddings(table, owner_id, self.legacy_scan_limit)
        scored: List[SearchHit] = []
        for record in candidates:
            try:
                similarity = cosine_similarity(vector, record.embedding_vector)
            except (TypeError, ValueError) as e:
                logger.debug(f"Skipping {record.id} in legacy scan: {e}")
                continue
            if similarity >= min_similarity:
                scored.append(SearchHit(record=record, similarity=similarity))

        scored.sort(key=lambda hit: hit.similarity, reverse=True)
        return scored[:limit]

    # ─── Keyword path ────────────────────────────────────────────────────────
    def keyword_search(self, owner_id: str, query: str, table: str = "memory", limit: int = 10) -> Tuple[List[str], List[SearchHit]]:
        keywords = extract_keywords(query)
        if not keywords:
            return [], []
        records = self.store.keyword_search(table, owner_id, keywords, limit)
        return keywords, [SearchHit(record=record) for record in records]
