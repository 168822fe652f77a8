# ──────────────────────────────────────────────────────────────────────────────
# File: services/record_store.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Relational store for memory and post records.

Both tables share one Record shape. Posts keep their text in `original_text`
and their label in `type`; the column map below hides that difference.
Vectors are stored as JSON next to the row so the legacy scan can work
without the vector index.
"""
from __future__ import annotations
import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from database import DatabaseManager
from services.errors import InvalidRequest, RecordNotFound

logger = logging.getLogger(__name__)

TABLES = ("memory", "posts")

_COLUMNS = {
    "memory": {"text": "text", "tag": "tag"},
    "posts": {"text": "original_text", "tag": "type"},
}

# Fields callers may change through update_fields, mapped to real columns per table
_UPDATABLE = {
    "memory": {
        "text": "text", "tag": "tag", "priority": "priority", "context": "context_json",
        "embedding_vector": "embedding_vector", "embedding_model": "embedding_model",
        "search_keywords": "search_keywords",
    },
    "posts": {
        "text": "original_text", "tag": "type", "generated_output": "generated_output",
        "status": "status", "context": "context_json",
        "embedding_vector": "embedding_vector", "embedding_model": "embedding_model",
        "search_keywords": "search_keywords",
    },
}

_JSON_FIELDS = {"context", "embedding_vector", "search_keywords"}


def now_ms() -> int:
    return int(time.time() * 1000)


def new_record_id(table: str) -> str:
    prefix = "mem" if table == "memory" else "post"
    return f"{prefix}_{uuid.uuid4().hex}"


def merge_context(existing: Optional[Dict[str, Any]], incoming: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Shallow merge of top-level keys; incoming wins per field."""
    merged = dict(existing or {})
    merged.update(incoming or {})
    return merged


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def check_table(table: str) -> str:
    if table not in TABLES:
        raise InvalidRequest(f"Unknown table '{table}'", {"allowed": list(TABLES)})
    return table


@dataclass
class Record:
    id: str
    owner_id: str
    table: str
    text: str
    context: Dict[str, Any] = field(default_factory=dict)
    tag: Optional[str] = None
    embedding_vector: Optional[List[float]] = None
    embedding_model: Optional[str] = None
    search_keywords: Optional[List[str]] = None
    created_at: int = 0
    updated_at: Optional[int] = None
    priority: Optional[str] = None
    generated_output: Optional[str] = None
    status: Optional[str] = None

    @property
    def embedding_text(self) -> str:
        """Text the embedding is computed over: enriched content when present."""
        extracted = self.context.get("extracted_text") if self.context else None
        if extracted:
            return extracted
        if self.table == "posts" and self.generated_output:
            return f"{self.text} {self.generated_output}"
        return self.text

    def index_metadata(self, record_type: Optional[str] = None) -> Dict[str, Any]:
        """Metadata stored with this record's vector index entry."""
        return {
            "owner_id": self.owner_id,
            "table": self.table,
            "type": record_type or self.context.get("subtype") or self.tag or ("memory" if self.table == "memory" else "post"),
        }

    def to_dict(self, include_vector: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "owner_id": self.owner_id,
            "table": self.table,
            "text": self.text,
            "context": self.context,
            "tag": self.tag,
            "embedding_model": self.embedding_model,
            "search_keywords": self.search_keywords,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.table == "memory":
            data["priority"] = self.priority
        else:
            data["generated_output"] = self.generated_output
            data["status"] = self.status
        if include_vector:
            data["embedding_vector"] = self.embedding_vector
        return data


def _loads(value, default=None):
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Unparseable JSON column value, ignoring")
        return default


def _row_to_record(table: str, row: sqlite3.Row) -> Record:
    keys = row.keys()
    cols = _COLUMNS[table]
    return Record(
        id=row["id"],
        owner_id=row["user_id"],
        table=table,
        text=row[cols["text"]],
        context=_loads(row["context_json"], {}) or {},
        tag=row[cols["tag"]],
        embedding_vector=_loads(row["embedding_vector"]) if "embedding_vector" in keys else None,
        embedding_model=row["embedding_model"],
        search_keywords=_loads(row["search_keywords"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        priority=row["priority"] if "priority" in keys else None,
        generated_output=row["generated_output"] if "generated_output" in keys else None,
        status=row["status"] if "status" in keys else None,
    )


class RecordStore:
    """CRUD and query helpers over the memory and posts tables."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    # ─── Writes ──────────────────────────────────────────────────────────────
    def create(self, record: Record) -> Record:
        check_table(record.table)
        if not record.created_at:
            record.created_at = now_ms()
        context = json.dumps(record.context or {})
        vector = json.dumps(record.embedding_vector) if record.embedding_vector is not None else None
        keywords = json.dumps(record.search_keywords) if record.search_keywords is not None else None

        with self.db.get_db_context() as conn:
            if record.table == "memory":
                conn.execute(
                    """
                    INSERT INTO memory (id, user_id, text, context_json, tag, priority,
                                        embedding_vector, embedding_model, search_keywords, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (record.id, record.owner_id, record.text, context, record.tag, record.priority,
                     vector, record.embedding_model, keywords, record.created_at),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO posts (id, user_id, type, original_text, generated_output, status, context_json,
                                       embedding_vector, embedding_model, search_keywords, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (record.id, record.owner_id, record.tag, record.text, record.generated_output,
                     record.status or "draft", context, vector, record.embedding_model, keywords,
                     record.created_at),
                )
        logger.debug(f"Stored {record.table} record {record.id} for owner {record.owner_id}")
        return record

    def update_fields(self, table: str, record_id: str, owner_id: Optional[str] = None, **fields) -> bool:
        """Partial update; only the named fields are written."""
        check_table(table)
        allowed = _UPDATABLE[table]
        unknown = set(fields) - set(allowed)
        if unknown:
            raise InvalidRequest(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if not fields:
            return False

        updates = []
        params: List[Any] = []
        for name, value in fields.items():
            updates.append(f"{allowed[name]} = ?")
            if name in _JSON_FIELDS and value is not None:
                value = json.dumps(value)
            params.append(value)
        updates.append("updated_at = ?")
        params.append(now_ms())

        sql = f"UPDATE {table} SET {', '.join(updates)} WHERE id = ?"
        params.append(record_id)
        if owner_id is not None:
            sql += " AND user_id = ?"
            params.append(owner_id)

        with self.db.get_db_context() as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount > 0

    def delete(self, table: str, record_id: str, owner_id: str) -> bool:
        check_table(table)
        with self.db.get_db_context() as conn:
            cur = conn.execute(f"DELETE FROM {table} WHERE id = ? AND user_id = ?", (record_id, owner_id))
            return cur.rowcount > 0

    # ─── Reads ───────────────────────────────────────────────────────────────
    def get(self, table: str, record_id: str, owner_id: Optional[str] = None) -> Record:
        check_table(table)
        sql = f"SELECT * FROM {table} WHERE id = ?"
        params: List[Any] = [record_id]
        if owner_id is not None:
            sql += " AND user_id = ?"
            params.append(owner_id)
        with self.db.get_db_context() as conn:
            row = conn.execute(sql, params).fetchone()
        if row is None:
            raise RecordNotFound(f"{table} record {record_id} not found")
        return _row_to_record(table, row)

    def get_many(self, table: str, ids: List[str], owner_id: Optional[str] = None) -> Dict[str, Record]:
        """Bulk read keyed by id; missing ids are simply absent."""
        check_table(table)
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        sql = f"SELECT * FROM {table} WHERE id IN ({placeholders})"
        params: List[Any] = list(ids)
        if owner_id is not None:
            sql += " AND user_id = ?"
            params.append(owner_id)
        with self.db.get_db_context() as conn:
            rows = conn.execute(sql, params).fetchall()
        return {row["id"]: _row_to_record(table, row) for row in rows}

    def list_recent(
        self,
        table: str,
        owner_id: str,
        tag: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Record]:
        check_table(table)
        tag_col = _COLUMNS[table]["tag"]
        sql = f"SELECT * FROM {table} WHERE user_id = ?"
        params: List[Any] = [owner_id]
        if tag:
            sql += f" AND {tag_col} = ?"
            params.append(tag)
        sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self.db.get_db_context() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_record(table, row) for row in rows]

    def list_tags(self, table: str, owner_id: str) -> List[Dict[str, Any]]:
        check_table(table)
        tag_col = _COLUMNS[table]["tag"]
        with self.db.get_db_context() as conn:
            rows = conn.execute(
                f"""
                SELECT {tag_col} AS tag, COUNT(*) AS count FROM {table}
                WHERE user_id = ? AND {tag_col} IS NOT NULL
                GROUP BY {tag_col} ORDER BY count DESC, tag ASC
                """,
                (owner_id,),
            ).fetchall()
        return [{"tag": row["tag"], "count": row["count"]} for row in rows]

    def list_with_embeddings(self, table: str, owner_id: str, limit: int = 100) -> List[Record]:
        """Most recent records that carry a stored vector, for the legacy scan."""
        check_table(table)
        with self.db.get_db_context() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM {table}
                WHERE user_id = ? AND embedding_vector IS NOT NULL
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (owner_id, limit),
            ).fetchall()
        return [_row_to_record(table, row) for row in rows]

    def list_analyzed(self, table: str, owner_id: str, limit: int = 500) -> List[Record]:
        """Most recent records whose context carries an AI analysis."""
        check_table(table)
        with self.db.get_db_context() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM {table}
                WHERE user_id = ? AND json_extract(context_json, '$.analysis') IS NOT NULL
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (owner_id, limit),
            ).fetchall()
        return [_row_to_record(table, row) for row in rows]

    def keyword_search(self, table: str, owner_id: str, keywords: List[str], limit: int = 10) -> List[Record]:
        """OR of substring matches across text fields and context, newest first."""
        check_table(table)
        if not keywords:
            return []
        if table == "memory":
            fields = ["text", "context_json"]
        else:
            fields = ["original_text", "generated_output", "context_json"]

        conditions = []
        params: List[Any] = [owner_id]
        for keyword in keywords:
            pattern = f"%{_escape_like(keyword)}%"
            conditions.append("(" + " OR ".join(f"{f} LIKE ? ESCAPE '\\'" for f in fields) + ")")
            params.extend([pattern] * len(fields))
        params.append(limit)

        with self.db.get_db_context() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM {table}
                WHERE user_id = ? AND ({' OR '.join(conditions)})
                ORDER BY created_at DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [_row_to_record(table, row) for row in rows]

    def find_by_exact_text(self, table: str, owner_id: str, text: str) -> Optional[str]:
        check_table(table)
        text_col = _COLUMNS[table]["text"]
        with self.db.get_db_context() as conn:
            row = conn.execute(
                f"SELECT id FROM {table} WHERE user_id = ? AND {text_col} = ? LIMIT 1",
                (owner_id, text),
            ).fetchone()
        return row["id"] if row else None

    def recent_texts(self, table: str, owner_id: str, since_ms: int, limit: int = 100) -> List[tuple[str, str]]:
        """(id, text) pairs created after since_ms, newest first."""
        check_table(table)
        text_col = _COLUMNS[table]["text"]
        with self.db.get_db_context() as conn:
            rows = conn.execute(
                f"""
                SELECT id, {text_col} AS text FROM {table}
                WHERE user_id = ? AND created_at > ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (owner_id, since_ms, limit),
            ).fetchall()
        return [(row["id"], row["text"]) for row in rows]

    # ─── Migration support ───────────────────────────────────────────────────
    def migration_counts(self, table: str, model: str) -> Dict[str, int]:
        check_table(table)
        text_col = _COLUMNS[table]["text"]
        has_text = f"({text_col} IS NOT NULL AND TRIM({text_col}) != '')"
        with self.db.get_db_context() as conn:
            row = conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN embedding_vector IS NOT NULL AND embedding_model = ? THEN 1 ELSE 0 END) AS migrated,
                    SUM(CASE WHEN NOT {has_text} THEN 1 ELSE 0 END) AS no_text,
                    SUM(CASE WHEN {has_text} AND (embedding_vector IS NULL OR embedding_model IS NULL
                             OR embedding_model != ?) THEN 1 ELSE 0 END) AS pending
                FROM {table}
                """,
                (model, model),
            ).fetchone()
        return {
            "total": row["total"] or 0,
            "migrated": row["migrated"] or 0,
            "pending": row["pending"] or 0,
            "no_text": row["no_text"] or 0,
        }

    def list_pending(self, table: str, model: str, limit: int = 10, offset: int = 0) -> List[Record]:
        check_table(table)
        text_col = _COLUMNS[table]["text"]
        with self.db.get_db_context() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM {table}
                WHERE {text_col} IS NOT NULL AND TRIM({text_col}) != ''
                  AND (embedding_vector IS NULL OR embedding_model IS NULL OR embedding_model != ?)
                ORDER BY created_at ASC
                LIMIT ? OFFSET ?
                """,
                (model, limit, offset),
            ).fetchall()
        return [_row_to_record(table, row) for row in rows]

    def iter_embedded(self, table: str, model: str, batch_size: int = 100) -> Iterator[List[Record]]:
        """Yield batches of records whose stored vector came from `model`."""
        check_table(table)
        offset = 0
        while True:
            with self.db.get_db_context() as conn:
                rows = conn.execute(
                    f"""
                    SELECT * FROM {table}
                    WHERE embedding_vector IS NOT NULL AND embedding_model = ?
                    ORDER BY created_at ASC
                    LIMIT ? OFFSET ?
                    """,
                    (model, batch_size, offset),
                ).fetchall()
            if not rows:
                return
            yield [_row_to_record(table, row) for row in rows]
            offset += len(rows)

    def existing_ids(self, table: str, ids: Iterable[str]) -> set[str]:
        ids = list(ids)
        if not ids:
            return set()
        return set(self.get_many(table, ids).keys())
