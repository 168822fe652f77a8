"""
Capture pipeline for memory and post records.

A save runs: dedup check -> URL enrichment -> embedding -> record store write
-> vector index upsert. The store write comes first and is the only step that
can fail the save; the index upsert is best-effort and logged on failure.
Store and index may drift; `MigrationService.sync_index` reconciles them.

AI analysis runs after the save as a background task and only touches
`context["analysis"]`.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

from services.content_deduplication_service import ContentDeduplicationService, is_url
from services.embeddings import Embeddings
from services.errors import CompletionFailed, ErrorKind, InvalidRequest, RecordNotFound
from services.memory_analyzer import MemoryAnalyzer, filter_by_action, summarize_insights
from services.record_store import (
    Record,
    RecordStore,
    check_table,
    merge_context,
    new_record_id,
    now_ms,
)
from services.search_adapter import extract_keywords
from services.url_ingestion_service import URLIngestionService, detect_url_type, strip_url_context
from services.vector_index import VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class SaveResult:
    id: str
    duplicate: bool = False
    enriched: bool = False
    type: Optional[str] = None
    table: str = "memory"
    embedded: bool = False
    indexed: bool = False
    pending_enrichment: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "id": self.id,
            "duplicate": self.duplicate,
            "enriched": self.enriched,
            "type": self.type,
            "table": self.table,
            "embedded": self.embedded,
            "indexed": self.indexed,
            "pending_enrichment": self.pending_enrichment,
        }


@dataclass
class EnrichResult:
    id: str
    enriched: bool
    url_type: Optional[str] = None
    title: Optional[str] = None
    has_transcript: bool = False
    embedded: bool = False
    text_length: int = 0


class MemoryService:
    """Creates, updates, enriches and deletes records across store and index."""

    def __init__(
        self,
        store: RecordStore,
        embeddings: Embeddings,
        index: Optional[VectorIndex],
        dedup: ContentDeduplicationService,
        ingestion: URLIngestionService,
        analyzer: Optional[MemoryAnalyzer] = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.index = index
        self.dedup = dedup
        self.ingestion = ingestion
        self.analyzer = analyzer
        logger.info("MemoryService initialized")

    # ========== Save ==========

    async def save(
        self,
        owner_id: str,
        text: str,
        tag: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        skip_dedup: bool = False,
        table: str = "memory",
        priority: Optional[str] = None,
        generated_output: Optional[str] = None,
        defer_enrichment: bool = False,
    ) -> SaveResult:
        """
        Persist a new record.

        Bare URLs are enriched inline unless `defer_enrichment` is set, in which
        case the caller schedules `enrich_in_background` after responding.
        """
        check_table(table)
        if not text or not text.strip():
            raise InvalidRequest("Text is required")

        context = dict(context or {})
        url_mode = is_url(text)
        if url_mode:
            text = text.strip()

        if not skip_dedup:
            dup = self.dedup.check_for_duplicates(owner_id, text, table)
            if dup.is_duplicate:
                return SaveResult(id=dup.existing_id, duplicate=True, type=tag, table=table)
            if dup.text_hash:
                context["text_hash"] = dup.text_hash

        record_type = tag
        extracted = None
        if url_mode:
            url_type = detect_url_type(text)
            record_type = url_type.value
            tag = tag or "link"
            context = merge_context(context, {"url": text, "subtype": url_type.value})
            if not defer_enrichment:
                extracted = await self.ingestion.extract(text)
                if extracted is not None:
                    context = merge_context(context, extracted.to_context(self.ingestion.config.max_combined_length))

        record = Record(
            id=new_record_id(table),
            owner_id=owner_id,
            table=table,
            text=text,
            context=context,
            tag=tag,
            priority=priority,
            generated_output=generated_output,
            created_at=now_ms(),
        )
        embedding_text = record.embedding_text
        record.search_keywords = extract_keywords(embedding_text)
        vector = await self.embeddings.embed(embedding_text)
        if vector is not None:
            record.embedding_vector = vector
            record.embedding_model = self.embeddings.model_id
        else:
            logger.warning(f"[{ErrorKind.EMBEDDING_UNAVAILABLE.value}] saving {record.id} without an embedding")

        self.store.create(record)
        indexed = self._index_record(record, record_type)
        logger.info(f"Saved {table} record {record.id} for owner {owner_id} (enriched={extracted is not None}, indexed={indexed})")

        return SaveResult(
            id=record.id,
            enriched=extracted is not None,
            type=record_type or tag or ("memory" if table == "memory" else "post"),
            table=table,
            embedded=vector is not None,
            indexed=indexed,
            pending_enrichment=url_mode and defer_enrichment,
        )

    # ========== Read ==========

    def get(self, owner_id: str, record_id: str, table: str = "memory") -> Record:
        return self.store.get(table, record_id, owner_id)

    def list(
        self,
        owner_id: str,
        table: str = "memory",
        tag: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Record]:
        return self.store.list_recent(table, owner_id, tag=tag, limit=limit, offset=offset)

    def list_tags(self, owner_id: str, table: str = "memory") -> List[Dict[str, Any]]:
        return self.store.list_tags(table, owner_id)

    # ========== Update / Delete ==========

    async def update(
        self,
        owner_id: str,
        record_id: str,
        text: Optional[str] = None,
        tag: Optional[str] = None,
        priority: Optional[str] = None,
        table: str = "memory",
        **extra_fields,
    ) -> Record:
        """Partial update; new text is re-embedded and re-indexed."""
        record = self.store.get(table, record_id, owner_id)

        fields: Dict[str, Any] = {k: v for k, v in extra_fields.items() if v is not None}
        if tag is not None:
            fields["tag"] = tag
        if priority is not None:
            fields["priority"] = priority
        if text is not None:
            if not text.strip():
                raise InvalidRequest("Text cannot be empty")
            fields["text"] = text
        if not fields:
            raise InvalidRequest("No fields to update")

        if text is not None and text != record.text:
            # URL-derived context described the old text
            context = strip_url_context(record.context)
            context.pop("analysis", None)
            if is_url(text):
                text = text.strip()
                fields["text"] = text
                context = merge_context(context, {"url": text, "subtype": detect_url_type(text).value})
            if context != record.context:
                fields["context"] = context

        self.store.update_fields(table, record_id, owner_id, **fields)
        record = self.store.get(table, record_id, owner_id)

        if text is not None or "generated_output" in fields:
            await self._reembed(record)
            record = self.store.get(table, record_id, owner_id)
        elif "tag" in fields and record.embedding_vector is not None and record.embedding_model == self.embeddings.model_id:
            self._index_record(record)
        return record

    async def _reembed(self, record: Record) -> bool:
        embedding_text = record.embedding_text
        vector = await self.embeddings.embed(embedding_text)
        if vector is None:
            logger.warning(f"[{ErrorKind.EMBEDDING_UNAVAILABLE.value}] {record.id} left pending after text update")
            self.store.update_fields(
                record.table, record.id, record.owner_id,
                embedding_vector=None, embedding_model=None,
                search_keywords=extract_keywords(embedding_text),
            )
            self._unindex([record.id])
            return False

        self.store.update_fields(
            record.table, record.id, record.owner_id,
            embedding_vector=vector,
            embedding_model=self.embeddings.model_id,
            search_keywords=extract_keywords(embedding_text),
        )
        record.embedding_vector = vector
        record.embedding_model = self.embeddings.model_id
        self._index_record(record)
        return True

    def delete(self, owner_id: str, record_id: str, table: str = "memory") -> None:
        """Delete the row, then the index entry. Index failures do not undo the delete."""
        if not self.store.delete(table, record_id, owner_id):
            raise RecordNotFound(f"{table} record {record_id} not found")
        self._unindex([record_id])
        logger.info(f"Deleted {table} record {record_id} for owner {owner_id}")

    # ========== Enrichment ==========

    async def enrich(self, owner_id: str, record_id: str, table: str = "memory") -> EnrichResult:
        """Retroactively enrich a URL-only record and re-embed it under the same id."""
        record = self.store.get(table, record_id, owner_id)
        url = record.text.strip()
        if not is_url(url):
            raise InvalidRequest("Only records holding a bare URL can be enriched")

        url_type = detect_url_type(url)
        extracted = await self.ingestion.extract(url)
        if extracted is None:
            return EnrichResult(id=record_id, enriched=False, url_type=url_type.value)

        context = merge_context(record.context, extracted.to_context(self.ingestion.config.max_combined_length))
        self.store.update_fields(table, record_id, owner_id, context=context, tag=record.tag or "link")
        record = self.store.get(table, record_id, owner_id)
        embedded = await self._reembed(record)

        return EnrichResult(
            id=record_id,
            enriched=True,
            url_type=url_type.value,
            title=extracted.title or None,
            has_transcript=bool(extracted.transcript),
            embedded=embedded,
            text_length=len(record.embedding_text),
        )

    async def enrich_in_background(self, owner_id: str, record_id: str, table: str = "memory") -> None:
        """BackgroundTasks entry point; never raises."""
        try:
            result = await self.enrich(owner_id, record_id, table)
            logger.info(f"Background enrichment of {record_id} finished (enriched={result.enriched})")
        except Exception as e:
            logger.error(f"Background enrichment of {record_id} failed: {e}")

    # ========== Analysis ==========

    async def analyze(self, owner_id: str, record_id: str, table: str = "memory") -> Dict[str, Any]:
        """Run AI analysis on a record and merge it into `context["analysis"]`."""
        if self.analyzer is None:
            raise CompletionFailed("Memory analysis is not configured")
        record = self.store.get(table, record_id, owner_id)

        analysis = await self.analyzer.analyze(record.embedding_text, record.context)
        if analysis is None:
            raise CompletionFailed(f"Could not analyze {table} record {record_id}")

        data = analysis.model_dump()
        # Re-read; enrichment may have changed the context meanwhile
        current = self.store.get(table, record_id, owner_id)
        self.store.update_fields(table, record_id, owner_id, context=merge_context(current.context, {"analysis": data}))
        logger.info(f"Analyzed {table} record {record_id}: {analysis.summary()}")
        return data

    async def analyze_in_background(self, owner_id: str, record_id: str, table: str = "memory") -> None:
        """BackgroundTasks entry point; never raises."""
        try:
            await self.analyze(owner_id, record_id, table)
        except Exception as e:
            logger.warning(f"Background analysis of {record_id} failed: {e}")

    def insights(self, owner_id: str) -> Dict[str, Any]:
        records = self.store.list_analyzed("memory", owner_id) + self.store.list_analyzed("posts", owner_id)
        return summarize_insights(records)

    def list_by_action(self, owner_id: str, action: str) -> List[Dict[str, Any]]:
        records = self.store.list_analyzed("memory", owner_id) + self.store.list_analyzed("posts", owner_id)
        records.sort(key=lambda r: r.created_at, reverse=True)
        return filter_by_action(records, action)

    # ========== Index helpers ==========

    def _index_record(self, record: Record, record_type: Optional[str] = None) -> bool:
        if record.embedding_vector is None or self.index is None or not self.index.available:
            return False
        try:
            self.index.upsert(record.id, record.embedding_vector, record.index_metadata(record_type))
            return True
        except Exception as e:
            logger.warning(f"[{ErrorKind.INDEX_UNAVAILABLE.value}] upsert of {record.id} failed: {e}")
            return False

    def _unindex(self, ids: List[str]) -> None:
        if self.index is None or not self.index.available:
            return
        try:
            self.index.delete_by_ids(ids)
        except Exception as e:
            logger.warning(f"[{ErrorKind.INDEX_UNAVAILABLE.value}] delete of {ids} failed: {e}")
