# ──────────────────────────────────────────────────────────────────────────────
# File: services/chat_service.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Retrieval-augmented chat over saved memories and posts.

The user message is embedded once and ranked against both tables through the
search service. The top sources become a numbered context block, the model is
asked to cite them as [n], and both turns are stored with the conversation.
"""
from __future__ import annotations
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from config import settings
from database import DatabaseManager
from services.errors import CompletionFailed, RecordNotFound
from services.record_store import now_ms
from services.search_adapter import SearchHit, SearchService

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a helpful assistant answering questions about the user's saved memories and posts.
Use the numbered sources below when they are relevant and cite them inline as [1], [2], etc.
If the sources do not contain the answer, say so and answer from general knowledge.

Sources:
{context}"""

SNIPPET_CHARS = 500
PREVIEW_CHARS = 150


@dataclass
class ChatSource:
    id: str
    table: str
    type: Optional[str]
    preview: str
    similarity: Optional[float]
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "table": self.table,
            "type": self.type,
            "preview": self.preview,
            "similarity": self.similarity,
            "created_at": self.created_at,
        }


@dataclass
class Completion:
    text: str
    usage: Dict[str, int] = field(default_factory=dict)
    model: Optional[str] = None


@dataclass
class ChatReply:
    conversation_id: str
    message: str
    sources: List[ChatSource]
    usage: Dict[str, int]
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "conversation_id": self.conversation_id,
            "message": self.message,
            "sources": [s.to_dict() for s in self.sources],
            "usage": self.usage,
            "model": self.model,
        }


class OllamaCompletionClient:
    """Chat completion through Ollama's /api/chat endpoint."""

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None):
        self.url = url or settings.ollama_chat_url
        self.timeout = timeout or settings.chat_timeout_seconds

    async def complete(self, messages: List[Dict[str, str]], model: str, json_format: bool = False) -> Completion:
        body: Dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        if json_format:
            body["format"] = "json"
            body["options"] = {"temperature": 0.3}
        try:
            response = await asyncio.to_thread(requests.post, self.url, json=body, timeout=self.timeout)
        except requests.Timeout:
            raise CompletionFailed("LLM request timed out")
        except requests.RequestException as e:
            logger.error(f"Ollama request failed: {e}")
            raise CompletionFailed(f"LLM generation failed: {e}")

        if response.status_code != 200:
            raise CompletionFailed(f"LLM generation failed: HTTP {response.status_code}")
        try:
            payload = response.json()
            text = payload["message"]["content"]
        except (ValueError, KeyError, TypeError):
            raise CompletionFailed("LLM returned an unreadable response")

        prompt_tokens = int(payload.get("prompt_eval_count") or 0)
        completion_tokens = int(payload.get("eval_count") or 0)
        return Completion(
            text=text,
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
            model=payload.get("model") or model,
        )


def _format_date(created_at: int) -> str:
    return datetime.fromtimestamp(created_at / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def build_context(hits: List[SearchHit]) -> str:
    lines = []
    for i, hit in enumerate(hits, start=1):
        record = hit.record
        text = record.context.get("extracted_text") or record.text
        snippet = text[:SNIPPET_CHARS] + ("..." if len(text) > SNIPPET_CHARS else "")
        label = record.context.get("subtype") or record.tag or record.table
        lines.append(f"[{i}] ({label}, {_format_date(record.created_at)}): {snippet}")
    return "\n".join(lines)


class ChatService:
    def __init__(self, db: DatabaseManager, search: SearchService, completion: Optional[OllamaCompletionClient] = None):
        self.db = db
        self.search = search
        self.completion = completion or OllamaCompletionClient()

    async def chat(
        self,
        owner_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        include_memories: bool = True,
        include_posts: bool = True,
        top_k: Optional[int] = None,
        min_similarity: Optional[float] = None,
        model: Optional[str] = None,
    ) -> ChatReply:
        top_k = top_k or settings.chat_top_k
        min_similarity = settings.chat_min_similarity if min_similarity is None else min_similarity
        model = model or settings.chat_model

        history: List[Dict[str, str]] = []
        if conversation_id:
            self._get_conversation_row(owner_id, conversation_id)
            history = self._history(conversation_id)

        hits = await self._retrieve(owner_id, message, include_memories, include_posts, top_k, min_similarity)

        messages = [{"role": "system", "content": SYSTEM_PROMPT.format(context=build_context(hits) or "(no matching sources)")}]
        messages.extend(history)
        messages.append({"role": "user", "content": message})

        completion = await self.completion.complete(messages, model)

        sources = [
            ChatSource(
                id=hit.record.id,
                table=hit.record.table,
                type=hit.record.context.get("subtype") or hit.record.tag,
                preview=(hit.record.context.get("title") or hit.record.text)[:PREVIEW_CHARS],
                similarity=round(hit.similarity, 2) if hit.similarity is not None else None,
                created_at=hit.record.created_at,
            )
            for hit in hits
        ]
        conversation_id = self._save_turn(owner_id, conversation_id, message, completion.text, sources)
        logger.info(f"Chat reply in {conversation_id} with {len(sources)} sources")

        return ChatReply(
            conversation_id=conversation_id,
            message=completion.text,
            sources=sources,
            usage=completion.usage,
            model=completion.model,
        )

    async def _retrieve(self, owner_id, message, include_memories, include_posts, top_k, min_similarity) -> List[SearchHit]:
        tables = [t for t, wanted in (("memory", include_memories), ("posts", include_posts)) if wanted]
        if not tables:
            return []
        vector = await self.search.embed_query(message)
        merged: List[SearchHit] = []
        for table in tables:
            _, hits = self.search.rank(vector, owner_id, table, top_k, min_similarity)
            merged.extend(hits)
        merged.sort(key=lambda hit: hit.similarity or 0.0, reverse=True)
        return merged[:top_k]

    # ─── Conversations ───────────────────────────────────────────────────────
    def _save_turn(
        self,
        owner_id: str,
        conversation_id: Optional[str],
        message: str,
        reply: str,
        sources: List[ChatSource],
    ) -> str:
        """Write both messages, creating the conversation on its first turn, in one transaction."""
        timestamp = now_ms()
        with self.db.get_db_context() as conn:
            if conversation_id is None:
                conversation_id = f"conv_{uuid.uuid4().hex}"
                title = message.strip().splitlines()[0][:80] if message.strip() else "New conversation"
                conn.execute(
                    "INSERT INTO chat_conversations (id, user_id, title, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                    (conversation_id, owner_id, title, timestamp, timestamp),
                )
            self._insert_message(conn, conversation_id, "user", message, None, timestamp)
            self._insert_message(conn, conversation_id, "assistant", reply, [s.to_dict() for s in sources], timestamp)
            conn.execute("UPDATE chat_conversations SET updated_at = ? WHERE id = ?", (timestamp, conversation_id))
        return conversation_id

    def _get_conversation_row(self, owner_id: str, conversation_id: str):
        with self.db.get_db_context() as conn:
            row = conn.execute(
                "SELECT * FROM chat_conversations WHERE id = ? AND user_id = ?",
                (conversation_id, owner_id),
            ).fetchone()
        if row is None:
            raise RecordNotFound(f"Conversation {conversation_id} not found")
        return row

    def _history(self, conversation_id: str) -> List[Dict[str, str]]:
        with self.db.get_db_context() as conn:
            rows = conn.execute(
                """
                SELECT role, content FROM (
                    SELECT role, content, created_at, rowid FROM chat_messages
                    WHERE conversation_id = ?
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT ?
                ) ORDER BY created_at ASC, rowid ASC
                """,
                (conversation_id, settings.chat_history_limit),
            ).fetchall()
        return [{"role": row["role"], "content": row["content"]} for row in rows]

    @staticmethod
    def _insert_message(conn, conversation_id: str, role: str, content: str, sources: Optional[list], timestamp: int):
        conn.execute(
            """
            INSERT INTO chat_messages (id, conversation_id, role, content, sources_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (f"msg_{uuid.uuid4().hex}", conversation_id, role, content,
             json.dumps(sources) if sources is not None else None, timestamp),
        )

    def list_conversations(self, owner_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self.db.get_db_context() as conn:
            rows = conn.execute(
                """
                SELECT c.id, c.title, c.created_at, c.updated_at,
                       (SELECT COUNT(*) FROM chat_messages m WHERE m.conversation_id = c.id) AS message_count
                FROM chat_conversations c
                WHERE c.user_id = ?
                ORDER BY c.updated_at DESC
                LIMIT ?
                """,
                (owner_id, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_conversation(self, owner_id: str, conversation_id: str) -> Dict[str, Any]:
        row = self._get_conversation_row(owner_id, conversation_id)
        with self.db.get_db_context() as conn:
            messages = conn.execute(
                """
                SELECT id, role, content, sources_json, created_at FROM chat_messages
                WHERE conversation_id = ? ORDER BY created_at ASC, rowid ASC
                """,
                (conversation_id,),
            ).fetchall()
        return {
            "id": row["id"],
            "title": row["title"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "messages": [
                {
                    "id": m["id"],
                    "role": m["role"],
                    "content": m["content"],
                    "sources": json.loads(m["sources_json"]) if m["sources_json"] else [],
                    "created_at": m["created_at"],
                }
                for m in messages
            ],
        }

    def rename_conversation(self, owner_id: str, conversation_id: str, title: str) -> None:
        self._get_conversation_row(owner_id, conversation_id)
        with self.db.get_db_context() as conn:
            conn.execute(
                "UPDATE chat_conversations SET title = ?, updated_at = ? WHERE id = ?",
                (title, now_ms(), conversation_id),
            )

    def delete_conversation(self, owner_id: str, conversation_id: str) -> None:
        self._get_conversation_row(owner_id, conversation_id)
        with self.db.get_db_context() as conn:
            conn.execute("DELETE FROM chat_messages WHERE conversation_id = ?", (conversation_id,))
            conn.execute("DELETE FROM chat_conversations WHERE id = ?", (conversation_id,))
