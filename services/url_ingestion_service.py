# ──────────────────────────────────────────────────────────────────────────────
# File: services/url_ingestion_service.py
# ──────────────────────────────────────────────────────────────────────────────
"""
URL enrichment for captured links.

Classifies a URL as youtube, twitter or webpage and fetches what it can:
- youtube: oEmbed title/author/thumbnail plus transcript service text
- twitter: oEmbed HTML snippet reduced to plain text
- webpage: <title>, meta description, Open Graph fields and article text

Every fetch has a bounded timeout. Failures are logged and surface as `None`
from `extract()`; the caller then saves the bare URL.
"""
from __future__ import annotations
import asyncio
import html as html_lib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from bs4 import BeautifulSoup

from config import settings
from services.errors import EnrichmentFailed, ErrorKind
from services.transcript_client import TranscriptClient

logger = logging.getLogger(__name__)

YOUTUBE_OEMBED = "https://www.youtube.com/oembed"
TWITTER_OEMBED = "https://publish.twitter.com/oembed"

_YOUTUBE_HOST = re.compile(r"(^|\.)(youtube\.com|youtu\.be)$", re.IGNORECASE)
_TWITTER_HOST = re.compile(r"(^|\.)(twitter\.com|x\.com)$", re.IGNORECASE)
_YOUTUBE_ID_PATTERNS = [
    re.compile(r"(?:youtube\.com/watch\?(?:.*&)?v=|youtu\.be/|youtube\.com/shorts/)([a-zA-Z0-9_-]{11})"),
    re.compile(r"youtube\.com/embed/([a-zA-Z0-9_-]{11})"),
]
_TWEET_PARAGRAPH = re.compile(r"<p[^>]*>(.*?)</p>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


class UrlType(str, Enum):
    YOUTUBE = "youtube"
    TWITTER = "twitter"
    WEBPAGE = "webpage"


def normalize_url(url: str) -> str:
    url = url.strip()
    if not url.lower().startswith(("http://", "https://")):
        url = "https://" + url
    return url


def _host(url: str) -> str:
    return (httpx.URL(normalize_url(url)).host or "").lower()


def detect_url_type(url: str) -> UrlType:
    """Classify by host: youtube.com/youtu.be, twitter.com/x.com, else webpage."""
    try:
        host = _host(url)
    except (httpx.InvalidURL, ValueError):
        return UrlType.WEBPAGE
    if _YOUTUBE_HOST.search(host):
        return UrlType.YOUTUBE
    if _TWITTER_HOST.search(host):
        return UrlType.TWITTER
    return UrlType.WEBPAGE


def extract_youtube_video_id(url: str) -> Optional[str]:
    for pattern in _YOUTUBE_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def _clean_text(value: str) -> str:
    return _WHITESPACE.sub(" ", value or "").strip()


@dataclass
class ExtractionConfig:
    """Configuration for URL enrichment"""
    timeout: float = 15.0
    user_agent: str = "Mozilla/5.0 (compatible; MyMemoryBot/1.0)"
    max_content_length: int = 8000
    max_combined_length: int = 10000
    transcript_language: str = "en"

    @classmethod
    def from_settings(cls) -> "ExtractionConfig":
        return cls(
            timeout=settings.enrichment_timeout_seconds,
            user_agent=settings.enrichment_user_agent,
            max_content_length=settings.webpage_max_content_chars,
            max_combined_length=settings.enrichment_max_text_chars,
            transcript_language=settings.transcript_language,
        )


# Context keys written by URL classification and enrichment
URL_CONTEXT_KEYS = frozenset({
    "url", "subtype", "title", "description", "author", "author_url", "thumbnail_url",
    "has_transcript", "transcript_language", "video_id", "og_image", "enriched_at", "extracted_text",
})


def strip_url_context(context: Dict[str, Any]) -> Dict[str, Any]:
    """Drop everything derived from a record's URL, keeping caller-supplied keys."""
    return {key: value for key, value in context.items() if key not in URL_CONTEXT_KEYS}


@dataclass
class ExtractedContent:
    """What enrichment found for one URL."""
    url: str
    url_type: UrlType
    title: str = ""
    description: str = ""
    text: str = ""
    transcript: str = ""
    author: str = ""
    thumbnail_url: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_content(self) -> bool:
        return bool(self.title or self.description or self.transcript or (self.text and self.text != self.url))

    def combined_text(self, max_length: int = 10000) -> str:
        body = self.transcript or self.text
        parts = [p for p in (self.title, self.description, body) if p]
        combined = " ".join(parts)[:max_length]
        return combined or self.url

    def to_context(self, max_length: int = 10000) -> Dict[str, Any]:
        context = {
            "url": self.url,
            "subtype": self.url_type.value,
            "title": self.title or None,
            "description": self.description or None,
            "author": self.author or None,
            "thumbnail_url": self.thumbnail_url or None,
            "has_transcript": bool(self.transcript),
            "enriched_at": datetime.now(timezone.utc).isoformat(),
            "extracted_text": self.combined_text(max_length),
        }
        context.update(self.metadata)
        return {key: value for key, value in context.items() if value is not None}


class DomainHandler:
    """Base class for per-source enrichment handlers."""

    url_type: UrlType = UrlType.WEBPAGE

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    def _client(self, config: ExtractionConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"User-Agent": config.user_agent},
            timeout=config.timeout,
            follow_redirects=True,
            transport=self.transport,
        )

    async def _fetch_oembed(self, endpoint: str, params: Dict[str, str], config: ExtractionConfig) -> Optional[Dict[str, Any]]:
        """oEmbed lookup; any non-200, network error or bad JSON is no data."""
        try:
            async with self._client(config) as client:
                response = await client.get(endpoint, params=params)
            if response.status_code != 200:
                logger.debug(f"oEmbed {endpoint} returned HTTP {response.status_code}")
                return None
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"oEmbed request to {endpoint} failed: {e}")
            return None
        return payload if isinstance(payload, dict) else None

    async def fetch(self, url: str, config: ExtractionConfig) -> ExtractedContent:
        raise NotImplementedError


class YouTubeHandler(DomainHandler):
    url_type = UrlType.YOUTUBE

    def __init__(self, transcripts: Optional[TranscriptClient] = None, transport=None):
        super().__init__(transport)
        self.transcripts = transcripts

    async def fetch(self, url, config):
        video_id = extract_youtube_video_id(url)
        if not video_id:
            raise EnrichmentFailed(f"No YouTube video id in {url}")

        watch_url = f"https://www.youtube.com/watch?v={video_id}"
        oembed_task = self._fetch_oembed(YOUTUBE_OEMBED, {"url": watch_url, "format": "json"}, config)
        if self.transcripts is not None:
            oembed, transcript = await asyncio.gather(
                oembed_task,
                self.transcripts.fetch_transcript(video_id, config.transcript_language),
            )
        else:
            oembed, transcript = await oembed_task, None

        oembed = oembed or {}
        content = ExtractedContent(
            url=url,
            url_type=self.url_type,
            title=oembed.get("title") or "",
            author=oembed.get("author_name") or "",
            thumbnail_url=oembed.get("thumbnail_url") or "",
            metadata={"video_id": video_id},
        )
        if oembed.get("author_url"):
            content.metadata["author_url"] = oembed["author_url"]
        if transcript is not None and transcript.success and transcript.text:
            content.transcript = transcript.text
            content.metadata["transcript_language"] = transcript.language
        elif transcript is not None:
            logger.info(f"No transcript for video {video_id}: {transcript.error}")
        return content


class TwitterHandler(DomainHandler):
    url_type = UrlType.TWITTER

    async def fetch(self, url, config):
        oembed = await self._fetch_oembed(TWITTER_OEMBED, {"url": url}, config)
        if not oembed:
            raise EnrichmentFailed(f"Twitter oEmbed returned nothing for {url}")

        text = ""
        match = _TWEET_PARAGRAPH.search(oembed.get("html") or "")
        if match:
            text = _clean_text(html_lib.unescape(_TAG.sub("", match.group(1))))

        author = oembed.get("author_name") or ""
        content = ExtractedContent(
            url=url,
            url_type=self.url_type,
            title=f"Tweet by {author}" if author else "",
            text=text,
            author=author,
        )
        if oembed.get("author_url"):
            content.metadata["author_url"] = oembed["author_url"]
        return content


class WebpageHandler(DomainHandler):
    url_type = UrlType.WEBPAGE

    async def fetch(self, url, config):
        async with self._client(config) as client:
            response = await client.get(url)
            response.raise_for_status()
            page = response.text
        return self.parse(url, page, config)

    def parse(self, url: str, page: str, config: ExtractionConfig) -> ExtractedContent:
        soup = BeautifulSoup(page, "html.parser")

        def meta(**attrs) -> str:
            tag = soup.find("meta", attrs=attrs)
            return _clean_text(tag.get("content", "")) if tag else ""

        title = _clean_text(soup.title.get_text()) if soup.title else ""
        description = meta(name="description")
        og_title = meta(property="og:title")
        og_description = meta(property="og:description")
        og_image = meta(property="og:image")

        main = soup.find("article") or soup.find("main")
        text = ""
        if main is not None:
            for tag in main(["script", "style"]):
                tag.decompose()
            text = _clean_text(main.get_text(" "))[: config.max_content_length]

        content = ExtractedContent(
            url=url,
            url_type=self.url_type,
            title=og_title or title,
            description=og_description or description,
            text=text,
            thumbnail_url=og_image,
        )
        if og_image:
            content.metadata["og_image"] = og_image
        return content


class URLIngestionService:
    """Runs the handler matching a URL and absorbs every failure."""

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        transcripts: Optional[TranscriptClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or ExtractionConfig.from_settings()
        if transcripts is None:
            transcripts = TranscriptClient(timeout=self.config.timeout, transport=transport)
        self.handlers: Dict[UrlType, DomainHandler] = {
            UrlType.YOUTUBE: YouTubeHandler(transcripts, transport=transport),
            UrlType.TWITTER: TwitterHandler(transport=transport),
            UrlType.WEBPAGE: WebpageHandler(transport=transport),
        }

    async def extract(self, url: str) -> Optional[ExtractedContent]:
        url = normalize_url(url)
        url_type = detect_url_type(url)
        handler = self.handlers[url_type]
        try:
            content = await handler.fetch(url, self.config)
        except EnrichmentFailed as e:
            logger.warning(f"[{ErrorKind.ENRICHMENT_FAILED.value}] {url}: {e.message}")
            return None
        except httpx.TimeoutException:
            logger.warning(f"[{ErrorKind.ENRICHMENT_FAILED.value}] {url}: timed out after {self.config.timeout}s")
            return None
        except Exception as e:
            logger.warning(f"[{ErrorKind.ENRICHMENT_FAILED.value}] {url}: {e}")
            return None

        if not content.has_content:
            logger.info(f"[{ErrorKind.ENRICHMENT_FAILED.value}] {url}: nothing extracted")
            return None
        logger.info(f"Enriched {url_type.value} URL {url}")
        return content
