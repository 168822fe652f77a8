# ──────────────────────────────────────────────────────────────────────────────
# File: services/migration_service.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Administrative re-embedding and index reconciliation.

- migration_status: per table counts of records embedded with the current model
- migrate_batch / migrate_all: re-embed pending records and upsert their entries
- sync_index: copy stored vectors into the index; optionally prune index
  entries that no longer have a record

None of this runs on the request hot path.
"""
from __future__ import annotations
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from services.embeddings import Embeddings
from services.errors import ErrorKind, IndexUnavailable
from services.record_store import TABLES, Record, RecordStore, check_table
from services.search_adapter import extract_keywords
from services.vector_index import VectorIndex

logger = logging.getLogger(__name__)

_ID_CHUNK = 500


@dataclass
class MigrationBatchResult:
    table: str
    migrated: int = 0
    errors: int = 0
    error_details: List[Dict[str, str]] = field(default_factory=list)
    offset: int = 0
    next_offset: int = 0
    has_more: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["error_details"] = self.error_details[:5]
        return data


@dataclass
class SyncResult:
    scanned: int = 0
    upserted: int = 0
    failed: int = 0
    pruned: int = 0
    by_table: Dict[str, int] = field(default_factory=dict)


class MigrationService:
    def __init__(self, store: RecordStore, embeddings: Embeddings, index: Optional[VectorIndex] = None):
        self.store = store
        self.embeddings = embeddings
        self.index = index

    def migration_status(self, target_model: Optional[str] = None) -> Dict[str, Any]:
        model = target_model or self.embeddings.model_id
        return {
            "target_model": model,
            "tables": {table: self.store.migration_counts(table, model) for table in TABLES},
        }

    async def migrate_batch(self, table: str, batch_size: int = 10, offset: int = 0) -> MigrationBatchResult:
        """
        Re-embed one page of pending records.

        Migrated records leave the pending set, so the next page starts at
        `offset + errors` rather than `offset + batch_size`.
        """
        check_table(table)
        model = self.embeddings.model_id
        batch = self.store.list_pending(table, model, limit=batch_size, offset=offset)
        result = MigrationBatchResult(table=table, offset=offset)
        if not batch:
            result.next_offset = offset
            return result

        texts = [record.embedding_text for record in batch]
        vectors = await self.embeddings.embed_batch(texts)

        for record, text, vector in zip(batch, texts, vectors):
            if vector is None:
                result.errors += 1
                result.error_details.append({"id": record.id, "error": ErrorKind.EMBEDDING_UNAVAILABLE.value})
                continue
            try:
                self.store.update_fields(
                    table, record.id,
                    embedding_vector=vector,
                    embedding_model=model,
                    search_keywords=extract_keywords(text),
                )
            except Exception as e:
                result.errors += 1
                result.error_details.append({"id": record.id, "error": str(e)})
                continue
            record.embedding_vector = vector
            record.embedding_model = model
            self._upsert(record)
            result.migrated += 1

        result.next_offset = offset + result.errors
        remaining = self.store.migration_counts(table, model)["pending"]
        result.has_more = remaining > result.next_offset
        logger.info(f"Migrated {result.migrated} {table} records ({result.errors} errors, {remaining} pending)")
        return result

    async def migrate_all(self, batch_size: int = 20) -> Dict[str, Any]:
        summary: Dict[str, Any] = {}
        for table in TABLES:
            migrated = errors = 0
            details: List[Dict[str, str]] = []
            offset = 0
            while True:
                batch = await self.migrate_batch(table, batch_size=batch_size, offset=offset)
                migrated += batch.migrated
                errors += batch.errors
                details.extend(batch.error_details)
                if not batch.has_more or (batch.migrated == 0 and batch.errors == 0):
                    break
                offset = batch.next_offset
            summary[table] = {"migrated": migrated, "errors": errors, "error_details": details[:5]}
        return summary

    def sync_index(self, table: Optional[str] = None, batch_size: int = 100, prune: bool = False) -> SyncResult:
        """Bulk re-sync store -> index for records embedded with the current model."""
        if self.index is None or not self.index.available:
            raise IndexUnavailable("Vector index is not configured")

        tables = [check_table(table)] if table else list(TABLES)
        result = SyncResult()
        model = self.embeddings.model_id
        for tbl in tables:
            count = 0
            for batch in self.store.iter_embedded(tbl, model, batch_size):
                for record in batch:
                    result.scanned += 1
                    if self._upsert(record):
                        count += 1
                    else:
                        result.failed += 1
            result.upserted += count
            result.by_table[tbl] = count

        if prune:
            result.pruned = self._prune()
        logger.info(f"Index sync: {result.upserted} upserted, {result.failed} failed, {result.pruned} pruned")
        return result

    def _prune(self) -> int:
        index_ids = self.index.list_ids()
        known: set[str] = set()
        for tbl in TABLES:
            for start in range(0, len(index_ids), _ID_CHUNK):
                known |= self.store.existing_ids(tbl, index_ids[start:start + _ID_CHUNK])
        drifted = [record_id for record_id in index_ids if record_id not in known]
        if drifted:
            logger.warning(f"[{ErrorKind.DRIFTED_INDEX_ENTRY.value}] pruning {len(drifted)} index entries")
            self.index.delete_by_ids(drifted)
        return len(drifted)

    def _upsert(self, record: Record) -> bool:
        if self.index is None or not self.index.available or record.embedding_vector is None:
            return False
        try:
            self.index.upsert(record.id, record.embedding_vector, record.index_metadata())
            return True
        except Exception as e:
            logger.warning(f"[{ErrorKind.INDEX_UNAVAILABLE.value}] upsert of {record.id} failed: {e}")
            return False
