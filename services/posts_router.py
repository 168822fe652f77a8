# ──────────────────────────────────────────────────────────────────────────────
# File: services/posts_router.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Post endpoints. Posts share the memory pipeline; their embedding covers the
original text plus any generated output.
"""
from __future__ import annotations
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from models import MessageResponse, RecordListResponse, RecordOut, SaveResponse
from services.app_config_service import AppConfigService
from services.auth_service import User, get_current_user
from services.dependencies import get_config_service, get_memory_service
from services.memory_service import MemoryService

router = APIRouter(prefix="/api/posts", tags=["posts"])

TABLE = "posts"


class PostCreateRequest(BaseModel):
    original_text: str = Field(..., min_length=1)
    type: Optional[str] = Field(None, description="Post type, e.g. thread or article")
    generated_output: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    skip_duplicate_check: bool = False


class PostUpdateRequest(BaseModel):
    original_text: Optional[str] = None
    type: Optional[str] = None
    generated_output: Optional[str] = None
    status: Optional[str] = None


@router.post("", response_model=SaveResponse)
async def create_post(
    request: PostCreateRequest,
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
    config: AppConfigService = Depends(get_config_service),
):
    result = await memory.save(
        current_user.id,
        request.original_text,
        tag=request.type,
        context=request.context,
        skip_dedup=request.skip_duplicate_check or not config.get("dedup_enabled", True),
        table=TABLE,
        generated_output=request.generated_output,
    )
    return SaveResponse(**result.to_dict())


@router.get("", response_model=RecordListResponse)
def list_posts(
    type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    records = memory.list(current_user.id, table=TABLE, tag=type, limit=limit, offset=offset)
    return RecordListResponse(
        count=len(records),
        limit=limit,
        offset=offset,
        results=[RecordOut(**r.to_dict()) for r in records],
    )


@router.get("/{post_id}", response_model=RecordOut)
def get_post(
    post_id: str,
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    return RecordOut(**memory.get(current_user.id, post_id, table=TABLE).to_dict())


@router.patch("/{post_id}", response_model=RecordOut)
async def update_post(
    post_id: str,
    request: PostUpdateRequest,
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    record = await memory.update(
        current_user.id,
        post_id,
        text=request.original_text,
        tag=request.type,
        table=TABLE,
        generated_output=request.generated_output,
        status=request.status,
    )
    return RecordOut(**record.to_dict())


@router.delete("/{post_id}", response_model=MessageResponse)
def delete_post(
    post_id: str,
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    memory.delete(current_user.id, post_id, table=TABLE)
    return MessageResponse(message=f"Post {post_id} deleted")
