import pytest
from unittest.mock import AsyncMock, patch

from services.errors import IndexUnavailable, InvalidRequest
from services.migration_service import MigrationService
from services.record_store import Record, new_record_id


@pytest.fixture
def migration(store, embeddings, index):
    return MigrationService(store, embeddings, index)


def add(store, text, table="memory", owner_id="u1", vector=None, model=None, created_at=None):
    record = Record(
        id=new_record_id(table), owner_id=owner_id, table=table, text=text,
        embedding_vector=vector, embedding_model=model, created_at=created_at or 0,
    )
    return store.create(record)


class TestStatus:
    def test_counts_per_table(self, store, embeddings, migration):
        add(store, "current", vector=[0.1] * embeddings.dim, model=embeddings.model_id)
        add(store, "stale", vector=[0.1] * 384, model="sentence_transformers/all-MiniLM-L6-v2")
        add(store, "never")
        add(store, "")
        add(store, "post draft", table="posts")

        status = migration.migration_status()
        assert status["target_model"] == embeddings.model_id
        assert status["tables"]["memory"] == {"total": 4, "migrated": 1, "pending": 2, "no_text": 1}
        assert status["tables"]["posts"] == {"total": 1, "migrated": 0, "pending": 1, "no_text": 0}

    def test_explicit_target_model(self, store, migration):
        add(store, "stale", vector=[0.1], model="ollama/nomic-embed-text")

        status = migration.migration_status("ollama/nomic-embed-text")
        assert status["tables"]["memory"]["migrated"] == 1


class TestMigrateBatch:
    @pytest.mark.asyncio
    async def test_pages_through_pending_records(self, store, embeddings, index, migration):
        for i in range(3):
            add(store, f"pending note number {i}", created_at=1000 + i)

        first = await migration.migrate_batch("memory", batch_size=2)
        assert first.migrated == 2
        assert first.errors == 0
        assert first.next_offset == 0
        assert first.has_more

        second = await migration.migrate_batch("memory", batch_size=2, offset=first.next_offset)
        assert second.migrated == 1
        assert not second.has_more

        assert migration.migration_status()["tables"]["memory"]["pending"] == 0
        assert index.count() == 3
        record = store.list_recent("memory", "u1")[0]
        assert record.embedding_model == embeddings.model_id
        assert record.search_keywords == ["pending", "note", "number"]

    @pytest.mark.asyncio
    async def test_failed_records_are_skipped_by_offset(self, store, embeddings, migration):
        add(store, "first pending", created_at=1000)
        add(store, "second pending", created_at=2000)

        with patch.object(embeddings, "embed_batch", new=AsyncMock(return_value=[None, None])):
            result = await migration.migrate_batch("memory", batch_size=10)

        assert result.migrated == 0
        assert result.errors == 2
        assert result.next_offset == 2
        assert not result.has_more
        assert [d["error"] for d in result.to_dict()["error_details"]] == ["embedding_unavailable"] * 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, migration):
        result = await migration.migrate_batch("posts", batch_size=5, offset=3)
        assert result.migrated == 0
        assert result.next_offset == 3
        assert not result.has_more

    @pytest.mark.asyncio
    async def test_unknown_table(self, migration):
        with pytest.raises(InvalidRequest):
            await migration.migrate_batch("notes")

    @pytest.mark.asyncio
    async def test_migrate_all_covers_both_tables(self, store, index, migration):
        for i in range(5):
            add(store, f"memory {i} about bread")
        add(store, "post about bread", table="posts")

        summary = await migration.migrate_all(batch_size=2)

        assert summary["memory"]["migrated"] == 5
        assert summary["posts"]["migrated"] == 1
        assert index.count() == 6


class TestSyncIndex:
    def test_sync_copies_current_vectors(self, store, embeddings, index, migration):
        current = add(store, "current", vector=[0.2] * embeddings.dim, model=embeddings.model_id)
        add(store, "stale", vector=[0.2] * 384, model="sentence_transformers/all-MiniLM-L6-v2")
        post = add(store, "post", table="posts", vector=[0.3] * embeddings.dim, model=embeddings.model_id)

        result = migration.sync_index()

        assert result.scanned == 2
        assert result.upserted == 2
        assert result.by_table == {"memory": 1, "posts": 1}
        assert sorted(index.list_ids()) == sorted([current.id, post.id])

    def test_sync_single_table(self, store, embeddings, index, migration):
        add(store, "current", vector=[0.2] * embeddings.dim, model=embeddings.model_id)
        add(store, "post", table="posts", vector=[0.3] * embeddings.dim, model=embeddings.model_id)

        result = migration.sync_index("posts")
        assert result.by_table == {"posts": 1}
        assert index.count() == 1

    def test_prune_removes_entries_without_records(self, store, embeddings, index, migration):
        kept = add(store, "current", vector=[0.2] * embeddings.dim, model=embeddings.model_id)
        index.upsert("mem_ghost", [0.2] * embeddings.dim, {"owner_id": "u1", "table": "memory"})

        result = migration.sync_index(prune=True)

        assert result.pruned == 1
        assert index.list_ids() == [kept.id]

    def test_sync_is_idempotent(self, store, embeddings, index, migration):
        add(store, "current", vector=[0.2] * embeddings.dim, model=embeddings.model_id)

        migration.sync_index()
        migration.sync_index()
        assert index.count() == 1

    def test_sync_without_index(self, store, embeddings):
        with pytest.raises(IndexUnavailable):
            MigrationService(store, embeddings, None).sync_index()
