# ──────────────────────────────────────────────────────────────────────────────
# File: services/transcript_client.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Client for the external YouTube transcript service.

GET {base_url}/transcript/{video_id}?lang=en
  -> {"success": bool, "text": str, "language": str, "segments": [...]}

The service is optional. Missing configuration, timeouts and bad payloads all
come back as an unsuccessful TranscriptResult rather than an exception.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


@dataclass
class TranscriptSegment:
    text: str
    start: float = 0.0
    duration: float = 0.0


@dataclass
class TranscriptResult:
    success: bool
    text: str = ""
    language: Optional[str] = None
    segments: List[TranscriptSegment] = field(default_factory=list)
    error: Optional[str] = None


class TranscriptClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.transcript_service_url or "").rstrip("/")
        self.timeout = timeout or settings.enrichment_timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def fetch_transcript(self, video_id: str, lang: Optional[str] = None) -> TranscriptResult:
        if not self.configured:
            return TranscriptResult(success=False, error="transcript service not configured")

        lang = lang or settings.transcript_language
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.base_url}/transcript/{video_id}",
                    params={"lang": lang},
                )
            if response.status_code != 200:
                return TranscriptResult(success=False, error=f"HTTP {response.status_code}")
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[transcript] fetch failed for {video_id}: {e}")
            return TranscriptResult(success=False, error=str(e))

        if not isinstance(payload, dict) or not payload.get("success"):
            error = payload.get("error") if isinstance(payload, dict) else "malformed response"
            return TranscriptResult(success=False, error=error or "no transcript")

        segments = []
        for segment in payload.get("segments") or []:
            if isinstance(segment, dict) and segment.get("text"):
                segments.append(TranscriptSegment(
                    text=segment["text"],
                    start=float(segment.get("start") or 0.0),
                    duration=float(segment.get("duration") or 0.0),
                ))

        return TranscriptResult(
            success=True,
            text=payload.get("text") or " ".join(s.text for s in segments),
            language=payload.get("language") or lang,
            segments=segments,
        )
