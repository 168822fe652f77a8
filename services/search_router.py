# ──────────────────────────────────────────────────────────────────────────────
# File: services/search_router.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Search endpoints over memories and posts.
- /api/search/semantic: vector index, legacy scan or keyword fallback
- /api/search/keyword: keyword matching only
"""
from __future__ import annotations
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models import SearchResponseOut
from services.app_config_service import AppConfigService
from services.auth_service import User, get_current_user
from services.dependencies import get_config_service, get_search_service
from services.search_adapter import METHOD_KEYWORD, SearchResponse, SearchService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/search", tags=["search"])


class SemanticSearchRequest(BaseModel):
    query: str
    table: Literal["memory", "posts"] = "memory"
    top_k: Optional[int] = Field(None, ge=1, le=50)
    min_similarity: Optional[float] = Field(None, ge=-1.0, le=1.0)
    use_legacy: bool = False


class KeywordSearchRequest(BaseModel):
    query: str
    table: Literal["memory", "posts"] = "memory"
    limit: int = Field(10, ge=1, le=100)


@router.post("/semantic", response_model=SearchResponseOut)
async def semantic_search(
    request: SemanticSearchRequest,
    current_user: User = Depends(get_current_user),
    search: SearchService = Depends(get_search_service),
    config: AppConfigService = Depends(get_config_service),
):
    settings = config.get_config()
    top_k = request.top_k or settings["search_top_k"]
    min_similarity = request.min_similarity if request.min_similarity is not None else settings["search_min_similarity"]

    response = await search.search(
        current_user.id,
        request.query,
        table=request.table,
        top_k=top_k,
        min_score=min_similarity,
        use_legacy=request.use_legacy,
    )
    logger.debug(f"Search '{request.query}' via {response.search_method}: {len(response.results)} results")
    return SearchResponseOut(**response.to_dict())


@router.post("/keyword", response_model=SearchResponseOut)
def keyword_search(
    request: KeywordSearchRequest,
    current_user: User = Depends(get_current_user),
    search: SearchService = Depends(get_search_service),
):
    keywords, hits = search.keyword_search(current_user.id, request.query, request.table, request.limit)
    response = SearchResponse(
        query=request.query,
        table=request.table,
        search_method=METHOD_KEYWORD,
        results=hits,
        ranked=False,
        keywords=keywords,
    )
    return SearchResponseOut(**response.to_dict())
