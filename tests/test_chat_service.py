import pytest
import requests
from unittest.mock import AsyncMock, Mock, patch

from config import settings
from services.chat_service import ChatService, Completion, OllamaCompletionClient, build_context
from services.errors import CompletionFailed, EmbeddingUnavailable, RecordNotFound
from services.record_store import Record
from services.search_adapter import SearchHit


@pytest.fixture
def completion():
    client = Mock()
    client.complete = AsyncMock(return_value=Completion(
        text="Keep the starter warm and feed it daily [1].",
        usage={"prompt_tokens": 120, "completion_tokens": 12, "total_tokens": 132},
        model="llama3.2",
    ))
    return client


@pytest.fixture
def chat_service(db_manager, search_service, completion):
    return ChatService(db_manager, search_service, completion)


async def seed(memory_service):
    await memory_service.save("u1", "Sourdough starter needs daily feeding with flour and water", tag="baking")
    await memory_service.save("u1", "Quarterly tax filing deadline is the fifteenth")
    await memory_service.save("u1", "Thread draft about sourdough starter care", table="posts")
    await memory_service.save("u2", "Sourdough starter secret from another account")


class TestChat:
    @pytest.mark.asyncio
    async def test_reply_cites_relevant_sources(self, chat_service, memory_service, completion):
        await seed(memory_service)

        reply = await chat_service.chat("u1", "how do I keep a sourdough starter alive", min_similarity=0.15)

        assert reply.message == "Keep the starter warm and feed it daily [1]."
        assert reply.usage["total_tokens"] == 132
        assert reply.conversation_id.startswith("conv_")
        previews = [s.preview for s in reply.sources]
        assert any("daily feeding" in p for p in previews)
        assert {s.table for s in reply.sources} == {"memory", "posts"}
        assert all("another account" not in p for p in previews)
        assert all("tax" not in p for p in previews)

        messages, model = completion.complete.await_args.args
        assert model == settings.chat_model
        assert messages[0]["role"] == "system"
        assert "[1] (" in messages[0]["content"]
        assert messages[-1] == {"role": "user", "content": "how do I keep a sourdough starter alive"}

    @pytest.mark.asyncio
    async def test_history_is_sent_on_follow_up(self, chat_service, memory_service, completion):
        await seed(memory_service)
        first = await chat_service.chat("u1", "tell me about my starter", min_similarity=0.3)

        await chat_service.chat("u1", "and how often?", conversation_id=first.conversation_id, min_similarity=0.3)

        messages = completion.complete.await_args.args[0]
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert messages[1]["content"] == "tell me about my starter"

        conversation = chat_service.get_conversation("u1", first.conversation_id)
        assert len(conversation["messages"]) == 4
        assert conversation["title"] == "tell me about my starter"

    @pytest.mark.asyncio
    async def test_no_tables_means_no_sources(self, chat_service, memory_service, completion):
        await seed(memory_service)

        reply = await chat_service.chat("u1", "hello", include_memories=False, include_posts=False)

        assert reply.sources == []
        system = completion.complete.await_args.args[0][0]["content"]
        assert "(no matching sources)" in system

    @pytest.mark.asyncio
    async def test_completion_failure_propagates(self, chat_service, completion):
        completion.complete.side_effect = CompletionFailed("LLM request timed out")

        with pytest.raises(CompletionFailed):
            await chat_service.chat("u1", "anything")

    @pytest.mark.asyncio
    async def test_failed_first_turn_leaves_no_conversation(self, chat_service, memory_service, completion):
        await seed(memory_service)
        completion.complete.side_effect = CompletionFailed("LLM request timed out")

        with pytest.raises(CompletionFailed):
            await chat_service.chat("u1", "hello there")

        assert chat_service.list_conversations("u1") == []

    @pytest.mark.asyncio
    async def test_failed_embedding_leaves_no_conversation(self, chat_service, search_service, completion):
        search_service.embed_query = AsyncMock(side_effect=EmbeddingUnavailable("Embedding provider unavailable"))

        with pytest.raises(EmbeddingUnavailable):
            await chat_service.chat("u1", "hello there")

        assert chat_service.list_conversations("u1") == []
        completion.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_follow_up_keeps_existing_messages(self, chat_service, completion):
        first = await chat_service.chat("u1", "first question")
        completion.complete.side_effect = CompletionFailed("LLM generation failed: HTTP 500")

        with pytest.raises(CompletionFailed):
            await chat_service.chat("u1", "second question", conversation_id=first.conversation_id)

        assert len(chat_service.get_conversation("u1", first.conversation_id)["messages"]) == 2

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, chat_service):
        with pytest.raises(RecordNotFound):
            await chat_service.chat("u1", "hi", conversation_id="conv_missing")


class TestConversations:
    @pytest.mark.asyncio
    async def test_list_rename_delete(self, chat_service):
        reply = await chat_service.chat("u1", "first question")

        listed = chat_service.list_conversations("u1")
        assert [c["id"] for c in listed] == [reply.conversation_id]
        assert listed[0]["message_count"] == 2
        assert chat_service.list_conversations("u2") == []

        chat_service.rename_conversation("u1", reply.conversation_id, "Renamed")
        assert chat_service.get_conversation("u1", reply.conversation_id)["title"] == "Renamed"

        with pytest.raises(RecordNotFound):
            chat_service.delete_conversation("u2", reply.conversation_id)
        chat_service.delete_conversation("u1", reply.conversation_id)
        assert chat_service.list_conversations("u1") == []


def test_build_context_numbers_and_truncates():
    hits = [
        SearchHit(Record(id="mem_1", owner_id="u1", table="memory", text="a" * 600, created_at=0), 0.9),
        SearchHit(Record(
            id="mem_2", owner_id="u1", table="memory", text="https://youtu.be/abc12345678",
            context={"subtype": "youtube", "extracted_text": "Video title transcript"}, created_at=0,
        ), 0.8),
    ]

    lines = build_context(hits).splitlines()
    assert lines[0].startswith("[1] (memory, 1970-01-01): ")
    assert lines[0].endswith("a" * 500 + "...")
    assert lines[1] == "[2] (youtube, 1970-01-01): Video title transcript"


class TestOllamaCompletionClient:
    @pytest.mark.asyncio
    async def test_parses_reply_and_usage(self):
        response = Mock(status_code=200)
        response.json.return_value = {
            "model": "llama3.2",
            "message": {"role": "assistant", "content": "Hi"},
            "prompt_eval_count": 10,
            "eval_count": 3,
        }
        with patch("services.chat_service.requests.post", return_value=response) as post:
            completion = await OllamaCompletionClient(url="http://ollama.test/api/chat").complete(
                [{"role": "user", "content": "hello"}], "llama3.2",
            )

        assert completion.text == "Hi"
        assert completion.usage == {"prompt_tokens": 10, "completion_tokens": 3, "total_tokens": 13}
        assert post.call_args.kwargs["json"]["stream"] is False

    @pytest.mark.asyncio
    async def test_http_error(self):
        with patch("services.chat_service.requests.post", return_value=Mock(status_code=500)):
            with pytest.raises(CompletionFailed):
                await OllamaCompletionClient(url="http://ollama.test/api/chat").complete([], "llama3.2")

    @pytest.mark.asyncio
    async def test_timeout(self):
        with patch("services.chat_service.requests.post", side_effect=requests.Timeout()):
            with pytest.raises(CompletionFailed):
                await OllamaCompletionClient(url="http://ollama.test/api/chat").complete([], "llama3.2")
