"""
Shared fixtures: a temporary database, the hashing embedder (shared words give
similar vectors, no model download) and an in-memory vector index.
"""

import pytest
from unittest.mock import AsyncMock

from database import create_test_db
from services.content_deduplication_service import ContentDeduplicationService
from services.embeddings import Embeddings
from services.memory_service import MemoryService
from services.record_store import RecordStore
from services.search_adapter import SearchService
from services.url_ingestion_service import URLIngestionService
from services.vector_index import InMemoryVectorIndex


@pytest.fixture
def db_manager(tmp_path):
    manager = create_test_db(str(tmp_path / "memory_test.db"))
    yield manager
    manager.close_all_connections()


@pytest.fixture
def store(db_manager):
    return RecordStore(db_manager)


@pytest.fixture
def embeddings():
    return Embeddings(provider="hashing", dim=256)


@pytest.fixture
def index():
    return InMemoryVectorIndex()


@pytest.fixture
def ingestion():
    """URL ingestion that never finds anything (no network in tests)."""
    service = URLIngestionService()
    service.extract = AsyncMock(return_value=None)
    return service


@pytest.fixture
def memory_service(store, embeddings, index, ingestion):
    return MemoryService(store, embeddings, index, ContentDeduplicationService(store), ingestion)


@pytest.fixture
def search_service(store, embeddings, index):
    return SearchService(store, embeddings, index)
