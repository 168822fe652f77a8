# ──────────────────────────────────────────────────────────────────────────────
# File: services/memory_router.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Memory capture endpoints: save, list, get, update, delete, enrich and analyze.

Handlers that only touch the record store are plain functions so FastAPI runs
them in its threadpool instead of on the event loop.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from models import MessageResponse, RecordListResponse, RecordOut, SaveResponse
from services.app_config_service import AppConfigService
from services.auth_service import User, get_current_user
from services.dependencies import get_config_service, get_memory_service
from services.memory_service import MemoryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/memory", tags=["memory"])


class MemoryCreateRequest(BaseModel):
    """Request model for saving a memory"""
    text: str = Field(..., description="Note text or a bare URL")
    tag: Optional[str] = Field(None, description="Classification label")
    context: Optional[Dict[str, Any]] = Field(None, description="Extra metadata merged into the record context")
    priority: Optional[str] = Field(None, description="Optional priority label")
    skip_duplicate_check: bool = Field(False, description="Save even if an identical memory exists")
    enrich_in_background: Optional[bool] = Field(None, description="Defer URL enrichment until after the response")

    @field_validator('text')
    @classmethod
    def validate_text(cls, v):
        if not v or not v.strip():
            raise ValueError("Text cannot be empty")
        return v


class MemoryUpdateRequest(BaseModel):
    text: Optional[str] = None
    tag: Optional[str] = None
    priority: Optional[str] = None


class EnrichResponse(BaseModel):
    success: bool
    id: str
    enriched: bool
    url_type: Optional[str] = None
    title: Optional[str] = None
    has_transcript: bool = False
    embedded: bool = False
    text_length: int = 0
    scheduled: bool = False


def _analysis_wanted(memory: MemoryService, config: AppConfigService) -> bool:
    return memory.analyzer is not None and bool(config.get("analysis_enabled", True))


@router.post("", response_model=SaveResponse)
async def create_memory(
    request: MemoryCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
    config: AppConfigService = Depends(get_config_service),
):
    settings = config.get_config()
    defer = request.enrich_in_background
    if defer is None:
        defer = bool(settings["enrich_in_background"])
    skip_dedup = request.skip_duplicate_check or not settings["dedup_enabled"]

    result = await memory.save(
        current_user.id,
        request.text,
        tag=request.tag,
        context=request.context,
        skip_dedup=skip_dedup,
        priority=request.priority,
        defer_enrichment=defer,
    )
    if result.pending_enrichment:
        background_tasks.add_task(memory.enrich_in_background, current_user.id, result.id)
    # Queued after enrichment so the analysis sees the extracted content
    if not result.duplicate and _analysis_wanted(memory, config):
        background_tasks.add_task(memory.analyze_in_background, current_user.id, result.id)
    return SaveResponse(**result.to_dict())


@router.get("", response_model=RecordListResponse)
def list_memories(
    tag: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    records = memory.list(current_user.id, tag=tag, limit=limit, offset=offset)
    return RecordListResponse(
        count=len(records),
        limit=limit,
        offset=offset,
        results=[RecordOut(**r.to_dict()) for r in records],
    )


@router.get("/tags")
def list_tags(
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    return {"success": True, "tags": memory.list_tags(current_user.id)}


@router.get("/insights/overview")
def insights_overview(
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    """Aggregated analysis across the owner's memories and posts"""
    return {"success": True, "insights": memory.insights(current_user.id)}


@router.get("/insights/by-action/{action}")
def insights_by_action(
    action: str,
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    results = memory.list_by_action(current_user.id, action)
    return {"success": True, "action": action, "count": len(results), "results": results}


@router.get("/{memory_id}", response_model=RecordOut)
def get_memory(
    memory_id: str,
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    return RecordOut(**memory.get(current_user.id, memory_id).to_dict())


@router.patch("/{memory_id}", response_model=RecordOut)
async def update_memory(
    memory_id: str,
    request: MemoryUpdateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
    config: AppConfigService = Depends(get_config_service),
):
    record = await memory.update(
        current_user.id,
        memory_id,
        text=request.text,
        tag=request.tag,
        priority=request.priority,
    )
    if request.text is not None and "analysis" not in record.context and _analysis_wanted(memory, config):
        background_tasks.add_task(memory.analyze_in_background, current_user.id, memory_id)
    return RecordOut(**record.to_dict())


@router.delete("/{memory_id}", response_model=MessageResponse)
def delete_memory(
    memory_id: str,
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    memory.delete(current_user.id, memory_id)
    return MessageResponse(message=f"Memory {memory_id} deleted")


@router.post("/{memory_id}/enrich", response_model=EnrichResponse)
async def enrich_memory(
    memory_id: str,
    background_tasks: BackgroundTasks,
    background: bool = Query(False, description="Run enrichment after responding"),
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    if background:
        # Ownership is checked before scheduling
        memory.get(current_user.id, memory_id)
        background_tasks.add_task(memory.enrich_in_background, current_user.id, memory_id)
        return EnrichResponse(success=True, id=memory_id, enriched=False, scheduled=True)

    result = await memory.enrich(current_user.id, memory_id)
    if not result.enriched:
        raise HTTPException(status_code=422, detail="Could not extract content from URL")
    return EnrichResponse(success=True, **result.__dict__)


@router.post("/{memory_id}/analyze")
async def analyze_memory(
    memory_id: str,
    current_user: User = Depends(get_current_user),
    memory: MemoryService = Depends(get_memory_service),
):
    """Run AI analysis now and store it on the memory"""
    analysis = await memory.analyze(current_user.id, memory_id)
    return {"success": True, "id": memory_id, "analysis": analysis}
