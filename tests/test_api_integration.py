"""
API integration tests: the FastAPI app wired to a temporary database, the
hashing embedder and an in-memory vector index.
"""

import inspect

import pytest
from unittest.mock import AsyncMock, Mock
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from app import create_app
from config import settings
from services.auth_service import User, create_access_token, get_current_user
from services.chat_service import Completion
from services.dependencies import build_container
from services.errors import CompletionFailed

ANALYSIS_JSON = (
    '{"category": "learning", "topics": ["sourdough"],'
    ' "suggested_actions": [{"type": "twitter_thread", "reason": "how-to", "priority": "high"}],'
    ' "action_priority": "high"}'
)


@pytest.fixture
def completion():
    async def complete(messages, model, json_format=False):
        if json_format:
            return Completion(text=ANALYSIS_JSON, model="test")
        return Completion(text="From your notes [1].", usage={}, model="test")

    client = Mock()
    client.complete = AsyncMock(side_effect=complete)
    return client


@pytest.fixture
def container(db_manager, embeddings, index, ingestion, completion):
    return build_container(db=db_manager, embeddings=embeddings, index=index, ingestion=ingestion, completion=completion)


@pytest.fixture
def app(container):
    return create_app(container)


@pytest.fixture
def client(app):
    app.dependency_overrides[get_current_user] = lambda: User(id="u1")
    return TestClient(app)


@pytest.fixture
def admin_headers(monkeypatch):
    monkeypatch.setattr(settings, "admin_key", "admin-secret")
    return {"X-Admin-Key": "admin-secret"}


class TestMemoryEndpoints:
    def test_create_get_list_delete(self, client):
        created = client.post("/api/memory", json={"text": "Sourdough bread baking with wild yeast", "tag": "baking"})
        assert created.status_code == 200
        body = created.json()
        assert body["success"] and body["embedded"] and body["indexed"]
        memory_id = body["id"]

        fetched = client.get(f"/api/memory/{memory_id}")
        assert fetched.status_code == 200
        assert fetched.json()["tag"] == "baking"
        assert "embedding_vector" not in fetched.json()

        listed = client.get("/api/memory", params={"tag": "baking"}).json()
        assert listed["count"] == 1

        assert client.get("/api/memory/tags").json()["tags"] == [{"tag": "baking", "count": 1}]

        assert client.delete(f"/api/memory/{memory_id}").status_code == 200
        missing = client.get(f"/api/memory/{memory_id}")
        assert missing.status_code == 404
        assert missing.json()["kind"] == "record_not_found"

    def test_empty_text_is_rejected(self, client):
        assert client.post("/api/memory", json={"text": "   "}).status_code == 422

    def test_duplicate_url_returns_existing_id(self, client):
        first = client.post("/api/memory", json={"text": "https://example.com/a"}).json()
        second = client.post("/api/memory", json={"text": "https://example.com/a"}).json()

        assert second["duplicate"] is True
        assert second["id"] == first["id"]

    def test_background_enrichment_is_scheduled(self, client, ingestion):
        body = client.post(
            "/api/memory",
            json={"text": "https://example.com/later", "enrich_in_background": True},
        ).json()

        assert body["pending_enrichment"] is True
        # TestClient runs background tasks before returning
        ingestion.extract.assert_awaited_once_with("https://example.com/later")

    def test_patch_memory(self, client):
        memory_id = client.post("/api/memory", json={"text": "old words here"}).json()["id"]

        updated = client.patch(f"/api/memory/{memory_id}", json={"text": "new words there", "priority": "high"})
        assert updated.status_code == 200
        assert updated.json()["text"] == "new words there"
        assert updated.json()["priority"] == "high"

        assert client.patch(f"/api/memory/{memory_id}", json={}).status_code == 400

    def test_enrich_without_content_is_422(self, client):
        memory_id = client.post("/api/memory", json={"text": "https://example.com/empty"}).json()["id"]
        assert client.post(f"/api/memory/{memory_id}/enrich").status_code == 422

    def test_other_owner_cannot_read(self, client, app):
        memory_id = client.post("/api/memory", json={"text": "private note"}).json()["id"]

        app.dependency_overrides[get_current_user] = lambda: User(id="u2")
        assert client.get(f"/api/memory/{memory_id}").status_code == 404


class TestPostEndpoints:
    def test_post_lifecycle(self, client):
        created = client.post("/api/posts", json={"original_text": "Thread about bread", "type": "thread"}).json()
        post_id = created["id"]
        assert created["table"] == "posts"

        updated = client.patch(f"/api/posts/{post_id}", json={"status": "published"}).json()
        assert updated["status"] == "published"

        listed = client.get("/api/posts", params={"type": "thread"}).json()
        assert [r["id"] for r in listed["results"]] == [post_id]

        assert client.delete(f"/api/posts/{post_id}").status_code == 200
        assert client.get(f"/api/posts/{post_id}").status_code == 404


class TestSearchEndpoints:
    def test_semantic_search(self, client):
        client.post("/api/memory", json={"text": "Sourdough bread baking with wild yeast starter"})
        client.post("/api/memory", json={"text": "Quarterly tax filing deadline reminder"})

        response = client.post("/api/search/semantic", json={"query": "baking sourdough bread", "top_k": 1, "min_similarity": 0.5})
        assert response.status_code == 200
        body = response.json()
        assert body["search_method"] == "vector_index"
        assert body["count"] == 1
        assert body["results"][0]["text"].startswith("Sourdough")
        assert body["results"][0]["similarity"] >= 0.5

    def test_legacy_search(self, client):
        client.post("/api/memory", json={"text": "Sourdough bread baking with wild yeast starter"})

        body = client.post(
            "/api/search/semantic",
            json={"query": "baking sourdough bread", "min_similarity": 0.5, "use_legacy": True},
        ).json()
        assert body["search_method"] == "legacy"
        assert body["count"] == 1

    def test_empty_query_is_400(self, client):
        response = client.post("/api/search/semantic", json={"query": "  "})
        assert response.status_code == 400
        assert response.json()["kind"] == "invalid_request"

    def test_keyword_search(self, client):
        client.post("/api/memory", json={"text": "Sourdough bread baking with wild yeast starter"})

        body = client.post("/api/search/keyword", json={"query": "wild yeast"}).json()
        assert body["search_method"] == "keyword"
        assert body["ranked"] is False
        assert body["results"][0]["similarity"] is None


class TestAdminEndpoints:
    def test_requires_admin_key(self, client, admin_headers):
        assert client.get("/api/admin/migration-status").status_code == 401
        assert client.get("/api/admin/migration-status", headers={"X-Admin-Key": "wrong"}).status_code == 401

    def test_unconfigured_admin_key(self, client, monkeypatch):
        monkeypatch.setattr(settings, "admin_key", None)
        assert client.get("/api/admin/migration-status", headers={"X-Admin-Key": "x"}).status_code == 503

    def test_migration_and_sync(self, client, admin_headers, index):
        client.post("/api/memory", json={"text": "Sourdough bread baking with wild yeast starter"})
        index.delete_by_ids(index.list_ids())

        status = client.get("/api/admin/migration-status", headers=admin_headers).json()
        assert status["tables"]["memory"]["migrated"] == 1

        synced = client.post("/api/admin/sync", json={"prune": True}, headers=admin_headers).json()
        assert synced["upserted"] == 1
        assert index.count() == 1

        migrated = client.post("/api/admin/migrate/memory", headers=admin_headers).json()
        assert migrated["migrated"] == 0

        assert client.post("/api/admin/migrate-all", headers=admin_headers).json()["success"] is True

    def test_config_round_trip(self, client, admin_headers):
        updated = client.put("/api/admin/config", json={"search_top_k": 3}, headers=admin_headers)
        assert updated.json()["config"]["search_top_k"] == 3
        assert client.get("/api/admin/config", headers=admin_headers).json()["config"]["search_top_k"] == 3

        assert client.put("/api/admin/config", json={"nope": 1}, headers=admin_headers).status_code == 400


class TestChatEndpoints:
    def test_chat_and_conversations(self, client):
        client.post("/api/memory", json={"text": "Sourdough starter needs daily feeding"})

        reply = client.post("/api/chat", json={"message": "how do I feed my sourdough starter", "min_similarity": 0.2}).json()
        assert reply["message"] == "From your notes [1]."
        assert reply["sources"]

        conversations = client.get("/api/chat/conversations").json()["conversations"]
        assert [c["id"] for c in conversations] == [reply["conversation_id"]]

        conversation_id = reply["conversation_id"]
        assert client.patch(f"/api/chat/conversations/{conversation_id}", json={"title": "Bread"}).status_code == 200
        assert client.get(f"/api/chat/conversations/{conversation_id}").json()["conversation"]["title"] == "Bread"
        assert client.delete(f"/api/chat/conversations/{conversation_id}").status_code == 200
        assert client.get(f"/api/chat/conversations/{conversation_id}").status_code == 404


class TestAuthentication:
    @pytest.fixture
    def anon_client(self, app):
        return TestClient(app)

    def test_missing_credentials(self, anon_client):
        assert anon_client.get("/api/memory").status_code == 401

    def test_api_key_maps_to_default_owner(self, anon_client, monkeypatch):
        monkeypatch.setattr(settings, "api_key", "test-api-key")
        monkeypatch.setattr(settings, "default_owner_id", "owner-1")

        created = anon_client.post("/api/memory", json={"text": "note"}, headers={"X-API-Key": "test-api-key"})
        assert created.status_code == 200
        record = anon_client.get(f"/api/memory/{created.json()['id']}", headers={"X-API-Key": "test-api-key"}).json()
        assert record["owner_id"] == "owner-1"

        assert anon_client.get("/api/memory", headers={"X-API-Key": "wrong"}).status_code == 401

    def test_bearer_token(self, anon_client):
        token = create_access_token("u42")
        headers = {"Authorization": f"Bearer {token}"}

        created = anon_client.post("/api/memory", json={"text": "token note"}, headers=headers).json()
        assert anon_client.get(f"/api/memory/{created['id']}", headers=headers).json()["owner_id"] == "u42"

        assert anon_client.get("/api/memory", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


class TestAnalysisEndpoints:
    def test_save_schedules_analysis(self, client):
        memory_id = client.post("/api/memory", json={"text": "Sourdough starter needs daily feeding"}).json()["id"]

        record = client.get(f"/api/memory/{memory_id}").json()
        assert record["context"]["analysis"]["category"] == "learning"

    def test_duplicate_save_is_not_reanalyzed(self, client, completion):
        client.post("/api/memory", json={"text": "https://example.com/a"})
        calls = completion.complete.await_count

        assert client.post("/api/memory", json={"text": "https://example.com/a"}).json()["duplicate"] is True
        assert completion.complete.await_count == calls

    def test_analysis_can_be_disabled(self, client, admin_headers, completion):
        client.put("/api/admin/config", json={"analysis_enabled": False}, headers=admin_headers)

        memory_id = client.post("/api/memory", json={"text": "Sourdough starter needs daily feeding"}).json()["id"]

        assert "analysis" not in client.get(f"/api/memory/{memory_id}").json()["context"]
        completion.complete.assert_not_awaited()

    def test_analyze_endpoint(self, client, admin_headers):
        client.put("/api/admin/config", json={"analysis_enabled": False}, headers=admin_headers)
        memory_id = client.post("/api/memory", json={"text": "Sourdough starter needs daily feeding"}).json()["id"]

        response = client.post(f"/api/memory/{memory_id}/analyze")
        assert response.status_code == 200
        assert response.json()["analysis"]["suggested_actions"][0]["type"] == "twitter_thread"
        assert client.get(f"/api/memory/{memory_id}").json()["context"]["analysis"]["action_priority"] == "high"

        assert client.post("/api/memory/mem_missing/analyze").status_code == 404

    def test_failed_analysis_is_502(self, client, completion):
        memory_id = client.post("/api/memory", json={"text": "Sourdough starter needs daily feeding"}).json()["id"]
        completion.complete.side_effect = CompletionFailed("LLM request timed out")

        response = client.post(f"/api/memory/{memory_id}/analyze")
        assert response.status_code == 502
        assert response.json()["kind"] == "completion_failed"

    def test_insights(self, client):
        client.post("/api/memory", json={"text": "Sourdough starter needs daily feeding"})
        client.post("/api/posts", json={"original_text": "Thread about bread", "type": "thread"})

        insights = client.get("/api/memory/insights/overview").json()["insights"]
        # Posts are not analyzed on save
        assert insights["total_analyzed"] == 1
        assert insights["by_category"] == {"learning": 1}

        by_action = client.get("/api/memory/insights/by-action/twitter_thread").json()
        assert by_action["count"] == 1
        assert client.get("/api/memory/insights/by-action/etsy_listing").json()["count"] == 0


class TestAppLifecycle:
    def test_shutdown_closes_vector_index(self, container):
        container.index.close = Mock()

        with TestClient(create_app(container)):
            container.index.close.assert_not_called()

        container.index.close.assert_called_once()

    def test_store_only_handlers_are_not_coroutines(self, app):
        endpoints = {
            (method, route.path): route.endpoint
            for route in app.routes if isinstance(route, APIRoute)
            for method in route.methods
        }
        sync_routes = [
            ("GET", "/api/memory"),
            ("GET", "/api/memory/{memory_id}"),
            ("DELETE", "/api/memory/{memory_id}"),
            ("GET", "/api/memory/insights/overview"),
            ("GET", "/api/posts"),
            ("POST", "/api/search/keyword"),
            ("GET", "/api/admin/migration-status"),
            ("POST", "/api/admin/sync"),
            ("GET", "/api/chat/conversations"),
        ]
        for key in sync_routes:
            assert not inspect.iscoroutinefunction(endpoints[key]), key


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["vector_index"] == "memory"
    assert body["embeddings_model"].startswith("hashing/")
