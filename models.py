from pydantic import BaseModel
from typing import Optional, List, Dict, Any

class RecordOut(BaseModel):
    id: str
    owner_id: str
    table: str
    text: str
    context: Dict[str, Any] = {}
    tag: Optional[str] = None
    embedding_model: Optional[str] = None
    search_keywords: Optional[List[str]] = None
    created_at: int
    updated_at: Optional[int] = None
    priority: Optional[str] = None
    generated_output: Optional[str] = None
    status: Optional[str] = None

class SearchResultOut(RecordOut):
    similarity: Optional[float] = None

class SaveResponse(BaseModel):
    success: bool = True
    id: str
    duplicate: bool = False
    enriched: bool = False
    type: Optional[str] = None
    table: str = "memory"
    embedded: bool = False
    indexed: bool = False
    pending_enrichment: bool = False

class SearchResponseOut(BaseModel):
    success: bool = True
    query: str
    table: str
    search_method: str
    ranked: bool = True
    fallback_reason: Optional[str] = None
    keywords: List[str] = []
    count: int
    results: List[SearchResultOut]

class RecordListResponse(BaseModel):
    success: bool = True
    count: int
    limit: int
    offset: int
    results: List[RecordOut]

class MessageResponse(BaseModel):
    success: bool = True
    message: str
