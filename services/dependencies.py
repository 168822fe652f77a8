# ──────────────────────────────────────────────────────────────────────────────
# File: services/dependencies.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Service wiring and FastAPI dependency getters.

`build_container` assembles every service once at startup; routers pull the
pieces they need from `request.app.state.container` through `Depends`.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request

from database import DatabaseManager, get_db_manager
from services.app_config_service import AppConfigService
from services.chat_service import ChatService, OllamaCompletionClient
from services.content_deduplication_service import ContentDeduplicationService
from services.embeddings import Embeddings, get_embeddings_service
from services.memory_analyzer import MemoryAnalyzer
from services.memory_service import MemoryService
from services.migration_service import MigrationService
from services.record_store import RecordStore
from services.search_adapter import SearchService
from services.url_ingestion_service import URLIngestionService
from services.vector_index import VectorIndex, build_vector_index

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass
class ServiceContainer:
    db: DatabaseManager
    store: RecordStore
    embeddings: Embeddings
    index: Optional[VectorIndex]
    search: SearchService
    memory: MemoryService
    migration: MigrationService
    config: AppConfigService
    chat: ChatService


def build_container(
    db: Optional[DatabaseManager] = None,
    embeddings: Optional[Embeddings] = None,
    index=_UNSET,
    ingestion: Optional[URLIngestionService] = None,
    completion: Optional[OllamaCompletionClient] = None,
) -> ServiceContainer:
    db = db or get_db_manager()
    db.initialize_database()
    store = RecordStore(db)
    embeddings = embeddings or get_embeddings_service()
    if index is _UNSET:
        index = build_vector_index(db_path=db.db_path)
    search = SearchService(store, embeddings, index)
    completion = completion or OllamaCompletionClient()
    memory = MemoryService(
        store,
        embeddings,
        index,
        ContentDeduplicationService(store),
        ingestion or URLIngestionService(),
        MemoryAnalyzer(completion),
    )
    logger.info(f"Services ready (embeddings={embeddings.model_id}, index={index.name if index else 'none'})")
    return ServiceContainer(
        db=db,
        store=store,
        embeddings=embeddings,
        index=index,
        search=search,
        memory=memory,
        migration=MigrationService(store, embeddings, index),
        config=AppConfigService(db),
        chat=ChatService(db, search, completion),
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_memory_service(container: ServiceContainer = Depends(get_container)) -> MemoryService:
    return container.memory


def get_search_service(container: ServiceContainer = Depends(get_container)) -> SearchService:
    return container.search


def get_migration_service(container: ServiceContainer = Depends(get_container)) -> MigrationService:
    return container.migration


def get_config_service(container: ServiceContainer = Depends(get_container)) -> AppConfigService:
    return container.config


def get_chat_service(container: ServiceContainer = Depends(get_container)) -> ChatService:
    return container.chat
