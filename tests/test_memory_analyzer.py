import json

import pytest
from unittest.mock import AsyncMock, Mock

from services.chat_service import Completion
from services.errors import CompletionFailed
from services.memory_analyzer import MemoryAnalysis, MemoryAnalyzer, filter_by_action, summarize_insights
from services.record_store import Record

ANALYSIS = {
    "category": "Learning",
    "topics": ["sourdough", "fermentation"],
    "content_type": "tutorial",
    "suggested_actions": [
        {"type": "twitter_thread", "reason": "Step-by-step guide", "priority": "high"},
        {"type": "save_reference", "reason": "Reuse later", "priority": "low"},
    ],
    "business_relevance": {"score": 40, "areas": ["etsy"]},
    "content_potential": {
        "twitter": {"score": 85, "format": "thread"},
        "tiktok": {"score": "30"},
        "myspace": {"score": 99},
    },
    "key_takeaways": ["Feed the starter daily"],
    "suggested_tags": ["baking"],
    "action_priority": "high",
    "sentiment": "positive",
    "language": "en",
}


def completion_returning(text):
    client = Mock()
    client.complete = AsyncMock(return_value=Completion(text=text, model="llama3.2"))
    return client


class TestMemoryAnalyzer:
    @pytest.mark.asyncio
    async def test_parses_and_normalizes(self):
        client = completion_returning(json.dumps(ANALYSIS))
        analyzer = MemoryAnalyzer(client, model="llama3.2", max_chars=20)

        analysis = await analyzer.analyze("Sourdough starter care zebrafish", {"title": "Starter 101", "url": "https://example.com"})

        assert analysis.category == "learning"
        assert analysis.suggested_actions[0].type == "twitter_thread"
        assert set(analysis.content_potential) == {"twitter", "tiktok"}
        assert analysis.content_potential["tiktok"].score == 30
        assert analysis.analyzed_at > 0

        messages, model = client.complete.await_args.args
        assert model == "llama3.2"
        assert client.complete.await_args.kwargs == {"json_format": True}
        prompt = messages[0]["content"]
        assert "Sourdough starter ca" in prompt
        assert "zebrafish" not in prompt
        assert "Title: Starter 101" in prompt
        assert "URL: https://example.com" in prompt

    @pytest.mark.asyncio
    async def test_accepts_fenced_json(self):
        analyzer = MemoryAnalyzer(completion_returning("```json\n" + json.dumps(ANALYSIS) + "\n```"))

        analysis = await analyzer.analyze("some text")
        assert analysis.topics == ["sourdough", "fermentation"]

    @pytest.mark.asyncio
    async def test_unknown_labels_fall_back(self):
        analyzer = MemoryAnalyzer(completion_returning(json.dumps({"category": "astrology", "action_priority": "urgent"})))

        analysis = await analyzer.analyze("some text")
        assert analysis.category == "reference"
        assert analysis.action_priority == "medium"

    @pytest.mark.asyncio
    async def test_unusable_replies_give_none(self):
        assert await MemoryAnalyzer(completion_returning("not json at all")).analyze("some text") is None
        assert await MemoryAnalyzer(completion_returning("[1, 2]")).analyze("some text") is None

        failing = Mock()
        failing.complete = AsyncMock(side_effect=CompletionFailed("LLM request timed out"))
        assert await MemoryAnalyzer(failing).analyze("some text") is None

    @pytest.mark.asyncio
    async def test_empty_text_is_not_sent(self):
        client = completion_returning(json.dumps(ANALYSIS))
        assert await MemoryAnalyzer(client).analyze("   ") is None
        client.complete.assert_not_awaited()


def analyzed_record(record_id, analysis, table="memory", created_at=0, **context):
    return Record(
        id=record_id, owner_id="u1", table=table, text=f"text of {record_id}",
        context={"analysis": analysis, **context}, created_at=created_at,
    )


def test_summarize_insights():
    low = {**ANALYSIS, "category": "tech", "action_priority": "low", "topics": ["python"],
           "content_potential": {"twitter": {"score": 72}}, "suggested_actions": []}
    records = [
        analyzed_record("mem_1", ANALYSIS, title="Starter 101"),
        analyzed_record("post_1", low, table="posts"),
        analyzed_record("mem_2", {"topics": "not a list"}),
    ]

    insights = summarize_insights(records)

    assert insights["total_analyzed"] == 2
    assert insights["by_category"] == {"learning": 1, "tech": 1}
    assert insights["by_action_priority"] == {"high": 1, "medium": 0, "low": 1}
    assert insights["top_topics"]["sourdough"] == 1
    assert insights["top_actions"] == {"twitter_thread": 1, "save_reference": 1}
    assert [(i["id"], i["score"]) for i in insights["content_potential"]["twitter"]] == [("mem_1", 85), ("post_1", 72)]
    assert insights["content_potential"]["tiktok"] == []
    assert insights["business_ideas"] == []
    assert [i["id"] for i in insights["actionable_items"]] == ["mem_1"]
    assert insights["actionable_items"][0]["title"] == "Starter 101"


def test_filter_by_action():
    records = [
        analyzed_record("mem_1", ANALYSIS),
        analyzed_record("mem_2", {**ANALYSIS, "suggested_actions": [{"type": "implement"}]}),
    ]

    matches = filter_by_action(records, "Twitter_Thread")
    assert [m["id"] for m in matches] == ["mem_1"]
    assert matches[0]["analysis"]["category"] == "learning"
    assert filter_by_action(records, "etsy_listing") == []


def test_summary_line():
    analysis = MemoryAnalysis.model_validate(ANALYSIS)
    assert analysis.summary() == "learning | sourdough, fermentation | -> twitter thread"
