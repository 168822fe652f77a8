# ──────────────────────────────────────────────────────────────────────────────
# File: api/routes_chat.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Memory-augmented chat API endpoints
Answers questions from the owner's saved memories and posts, with citations
"""
from __future__ import annotations
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from services.app_config_service import AppConfigService
from services.auth_service import User, get_current_user
from services.chat_service import ChatService
from services.dependencies import get_chat_service, get_config_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/chat", tags=["chat"])

# ─── Request/Response Models ─────────────────────────────────────────────────

class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    conversation_id: Optional[str] = None
    include_memories: bool = True
    include_posts: bool = True
    top_k: Optional[int] = Field(None, ge=1, le=20)
    min_similarity: Optional[float] = None
    model_override: Optional[str] = None

class ConversationUpdate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)

# ─── Endpoints ───────────────────────────────────────────────────────────────

@router.post("")
async def chat(
    request: ChatRequest,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
    config: AppConfigService = Depends(get_config_service),
):
    """Chat endpoint with retrieval over saved content"""
    settings = config.get_config()
    reply = await chat_service.chat(
        current_user.id,
        request.message,
        conversation_id=request.conversation_id,
        include_memories=request.include_memories,
        include_posts=request.include_posts,
        top_k=request.top_k or settings["chat_top_k"],
        min_similarity=request.min_similarity if request.min_similarity is not None else settings["chat_min_similarity"],
        model=request.model_override or settings["chat_model"],
    )
    return reply.to_dict()

@router.get("/conversations")
def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    conversations = chat_service.list_conversations(current_user.id, limit=limit)
    return {"success": True, "conversations": conversations}

@router.get("/conversations/{conversation_id}")
def get_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    return {"success": True, "conversation": chat_service.get_conversation(current_user.id, conversation_id)}

@router.patch("/conversations/{conversation_id}")
def rename_conversation(
    conversation_id: str,
    request: ConversationUpdate,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    chat_service.rename_conversation(current_user.id, conversation_id, request.title)
    return {"success": True}

@router.delete("/conversations/{conversation_id}")
def delete_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    chat_service.delete_conversation(current_user.id, conversation_id)
    return {"success": True}
