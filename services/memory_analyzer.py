# ──────────────────────────────────────────────────────────────────────────────
# File: services/memory_analyzer.py
# ──────────────────────────────────────────────────────────────────────────────
"""
AI analysis of saved content.

Each record can be categorized by the completion model (category, topics,
content type, suggested actions, content potential per platform). The result
is stored under `context["analysis"]` and aggregated into per-owner insights.
"""
from __future__ import annotations
import json
import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from config import settings
from services.errors import CompletionFailed
from services.record_store import Record, now_ms

logger = logging.getLogger(__name__)

CATEGORIES = ("business", "personal", "tech", "content", "learning", "idea", "inspiration", "reference")
CONTENT_TYPES = ("article", "tweet", "video", "tool", "quote", "note", "tutorial", "news", "research")
PRIORITIES = ("high", "medium", "low")
PLATFORMS = ("twitter", "linkedin", "instagram", "youtube", "tiktok", "article")
ACTION_TYPES = (
    "twitter_thread", "twitter_post", "linkedin_post", "linkedin_article",
    "instagram_post", "instagram_carousel", "instagram_reel",
    "youtube_video", "youtube_short", "tiktok",
    "blog_article", "newsletter", "implement", "research_more",
    "share_team", "save_reference", "create_product", "etsy_listing",
)

# Score at which an item counts as high potential in insights
HIGH_POTENTIAL_SCORE = 70


def _clamp_score(value: Any) -> int:
    try:
        return max(0, min(100, int(float(value))))
    except (TypeError, ValueError):
        return 0


def _choice(value: Any, allowed: tuple, default: str) -> str:
    value = str(value or "").strip().lower()
    return value if value in allowed else default


# ─── Analysis models ─────────────────────────────────────────────────────────

class SuggestedAction(BaseModel):
    type: str
    reason: str = ""
    priority: str = "medium"
    suggested_angle: Optional[str] = None

    @field_validator('type', mode='before')
    @classmethod
    def normalize_type(cls, v):
        return str(v or "").strip().lower().replace(" ", "_")

    @field_validator('priority', mode='before')
    @classmethod
    def normalize_priority(cls, v):
        return _choice(v, PRIORITIES, "medium")


class ContentPotential(BaseModel):
    score: int = 0
    format: Optional[str] = None
    angle: Optional[str] = None

    @field_validator('score', mode='before')
    @classmethod
    def clamp(cls, v):
        return _clamp_score(v)


class BusinessRelevance(BaseModel):
    score: int = 0
    areas: List[str] = []

    @field_validator('score', mode='before')
    @classmethod
    def clamp(cls, v):
        return _clamp_score(v)


class MemoryAnalysis(BaseModel):
    """Validated analysis of one record"""
    category: str = "reference"
    topics: List[str] = []
    content_type: str = "note"
    suggested_actions: List[SuggestedAction] = []
    business_relevance: BusinessRelevance = Field(default_factory=BusinessRelevance)
    content_potential: Dict[str, ContentPotential] = {}
    key_takeaways: List[str] = []
    suggested_tags: List[str] = []
    action_priority: str = "medium"
    sentiment: str = "neutral"
    language: str = "en"
    estimated_time: Optional[str] = None
    analyzed_at: int = 0

    @field_validator('category', mode='before')
    @classmethod
    def normalize_category(cls, v):
        return _choice(v, CATEGORIES, "reference")

    @field_validator('content_type', mode='before')
    @classmethod
    def normalize_content_type(cls, v):
        return _choice(v, CONTENT_TYPES, "note")

    @field_validator('action_priority', mode='before')
    @classmethod
    def normalize_action_priority(cls, v):
        return _choice(v, PRIORITIES, "medium")

    @field_validator('topics', 'suggested_tags')
    @classmethod
    def limit_labels(cls, v):
        return v[:10]

    @field_validator('suggested_actions')
    @classmethod
    def limit_actions(cls, v):
        if len(v) > 10:
            logger.warning(f"Truncating {len(v)} suggested actions to 10")
        return v[:10]

    @field_validator('content_potential')
    @classmethod
    def known_platforms(cls, v):
        return {platform.lower(): potential for platform, potential in v.items() if platform.lower() in PLATFORMS}

    def summary(self) -> str:
        """One-line description for logs and listings."""
        parts = [self.category, ", ".join(self.topics[:2])]
        if self.suggested_actions:
            parts.append(f"-> {self.suggested_actions[0].type.replace('_', ' ')}")
        return " | ".join(p for p in parts if p)


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


# ─── Analyzer ────────────────────────────────────────────────────────────────

class MemoryAnalyzer:
    """Analyze saved content with the completion model"""

    def __init__(self, completion, model: Optional[str] = None, max_chars: Optional[int] = None):
        self.completion = completion
        self.model = model or settings.analysis_model
        self.max_chars = max_chars or settings.analysis_max_chars

    async def analyze(self, text: str, context: Optional[Dict[str, Any]] = None) -> Optional[MemoryAnalysis]:
        """Return the validated analysis, or None when the model gives nothing usable."""
        if not text or not text.strip():
            return None
        prompt = self._build_prompt(text[:self.max_chars], context or {})

        try:
            completion = await self.completion.complete(
                [{"role": "user", "content": prompt}], self.model, json_format=True,
            )
        except CompletionFailed as e:
            logger.warning(f"Memory analysis failed: {e.message}")
            return None

        try:
            raw = json.loads(_strip_fences(completion.text))
            analysis = MemoryAnalysis.model_validate(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse analysis JSON: {e}")
            return None
        except ValidationError as e:
            logger.error(f"Analysis validation failed: {e}")
            return None

        analysis.analyzed_at = now_ms()
        logger.info(f"Analysis complete: {analysis.summary()}")
        return analysis

    def _build_prompt(self, content: str, context: Dict[str, Any]) -> str:
        context_lines = [
            f"{label}: {context[key]}"
            for key, label in (("title", "Title"), ("description", "Description"), ("author", "Author"), ("url", "URL"))
            if context.get(key)
        ]
        context_info = "ADDITIONAL CONTEXT:\n" + "\n".join(context_lines) if context_lines else ""

        return f"""You are a content strategist and business analyst. Analyze this saved memory and provide actionable insights.

CONTENT TO ANALYZE:
\"\"\"
{content}
\"\"\"

{context_info}

Respond with ONLY valid JSON:
{{
  "category": "{'|'.join(CATEGORIES)}",
  "topics": ["topic1", "topic2"],
  "content_type": "{'|'.join(CONTENT_TYPES)}",
  "suggested_actions": [
    {{
      "type": "{'|'.join(ACTION_TYPES)}",
      "reason": "Why this action makes sense",
      "priority": "high|medium|low",
      "suggested_angle": "Optional hook or angle"
    }}
  ],
  "business_relevance": {{"score": 0, "areas": ["etsy", "saas", "marketing"]}},
  "content_potential": {{
    "twitter": {{"score": 0, "format": "thread|single|quote", "angle": "hook idea"}},
    "linkedin": {{"score": 0, "format": "post|article|carousel", "angle": "hook idea"}},
    "instagram": {{"score": 0, "format": "carousel|reel|story|post", "angle": "hook idea"}},
    "youtube": {{"score": 0, "format": "video|short", "angle": "hook idea"}},
    "tiktok": {{"score": 0, "format": "trend|tutorial|story", "angle": "hook idea"}},
    "article": {{"score": 0, "format": "blog|newsletter|guide", "angle": "hook idea"}}
  }},
  "key_takeaways": ["Key point 1", "Key point 2"],
  "suggested_tags": ["tag1", "tag2"],
  "action_priority": "high|medium|low",
  "sentiment": "positive|neutral|negative|mixed",
  "language": "en",
  "estimated_time": "5 min read"
}}

Scores are 0-100. Be specific with suggested actions."""


# ─── Insights ────────────────────────────────────────────────────────────────

def _item_summary(record: Record, analysis: MemoryAnalysis) -> Dict[str, Any]:
    return {
        "id": record.id,
        "table": record.table,
        "title": record.context.get("title") or record.text[:80],
        "tag": record.tag,
        "category": analysis.category,
        "action_priority": analysis.action_priority,
        "created_at": record.created_at,
    }


def _analysis_of(record: Record) -> Optional[MemoryAnalysis]:
    try:
        return MemoryAnalysis.model_validate(record.context.get("analysis") or {})
    except ValidationError:
        logger.debug(f"Skipping unreadable analysis on {record.id}")
        return None


def summarize_insights(records: List[Record]) -> Dict[str, Any]:
    """Aggregate stored analyses: counts by category, priority, topic and action, plus top items."""
    by_category: Counter = Counter()
    by_priority = {priority: 0 for priority in PRIORITIES}
    topics: Counter = Counter()
    actions: Counter = Counter()
    potential: Dict[str, List[tuple]] = {platform: [] for platform in PLATFORMS}
    business: List[tuple] = []
    actionable: List[Dict[str, Any]] = []
    analyzed = 0

    for record in records:
        analysis = _analysis_of(record)
        if analysis is None:
            continue
        analyzed += 1
        summary = _item_summary(record, analysis)

        by_category[analysis.category] += 1
        by_priority[analysis.action_priority] += 1
        topics.update(analysis.topics)
        actions.update(action.type for action in analysis.suggested_actions)

        for platform, content in analysis.content_potential.items():
            if content.score >= HIGH_POTENTIAL_SCORE:
                potential[platform].append((content.score, summary))
        if analysis.business_relevance.score >= HIGH_POTENTIAL_SCORE:
            business.append((analysis.business_relevance.score, summary))
        if analysis.action_priority == "high":
            actionable.append(summary)

    def top(scored: List[tuple], limit: int) -> List[Dict[str, Any]]:
        ranked = sorted(scored, key=lambda item: item[0], reverse=True)[:limit]
        return [{**summary, "score": score} for score, summary in ranked]

    return {
        "total_analyzed": analyzed,
        "by_category": dict(by_category),
        "by_action_priority": by_priority,
        "top_topics": dict(topics.most_common(20)),
        "top_actions": dict(actions.most_common(15)),
        "content_potential": {platform: top(scored, 10) for platform, scored in potential.items()},
        "business_ideas": top(business, 10),
        "actionable_items": actionable[:20],
    }


def filter_by_action(records: List[Record], action: str) -> List[Dict[str, Any]]:
    """Records whose analysis suggests `action`, newest first as given."""
    action = action.strip().lower()
    matches = []
    for record in records:
        analysis = _analysis_of(record)
        if analysis is None or not any(a.type == action for a in analysis.suggested_actions):
            continue
        matches.append({
            **_item_summary(record, analysis),
            "text": record.text[:300],
            "analysis": analysis.model_dump(),
        })
    return matches
