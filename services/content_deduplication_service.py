"""
Content Deduplication Service

Decides whether an incoming capture repeats something the owner already saved:
- bare URLs match on identical text, across all of the owner's records
- longer free text matches on a 32-bit rolling hash, within a recent window
- short free text is never treated as a duplicate
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from config import settings
from services.record_store import RecordStore, now_ms

log = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"^https?://\S+$")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def is_url(text: Optional[str], max_length: Optional[int] = None) -> bool:
    """True when the whole (trimmed) text is a single http(s) URL."""
    if not text:
        return False
    trimmed = text.strip()
    limit = max_length or settings.url_max_length
    return bool(URL_PATTERN.match(trimmed)) and len(trimmed) < limit


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def simple_hash(text: str) -> str:
    """Fast non-cryptographic hash: h = h * 31 + unit over UTF-16 code units, wrapped to int32."""
    encoded = text.encode("utf-16-le")
    h = 0
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


@dataclass
class DuplicationResult:
    """Result of content duplication check."""
    is_duplicate: bool
    existing_id: Optional[str] = None
    match_type: str = "none"  # "url", "hash", "none"
    text_hash: Optional[str] = None


class ContentDeduplicationService:
    """Service for capture-time duplicate detection."""

    def __init__(
        self,
        store: RecordStore,
        hash_min_length: Optional[int] = None,
        window_hours: Optional[int] = None,
        scan_limit: Optional[int] = None,
    ):
        self.store = store
        self.hash_min_length = hash_min_length if hash_min_length is not None else settings.dedup_hash_min_length
        self.window_hours = window_hours if window_hours is not None else settings.dedup_window_hours
        self.scan_limit = scan_limit if scan_limit is not None else settings.dedup_scan_limit

    def check_for_duplicates(self, owner_id: str, text: str, table: str = "memory") -> DuplicationResult:
        """
        Check whether `text` duplicates an existing record of the owner.

        Errors while querying are logged and treated as "not a duplicate" so
        capture is never blocked by the check itself.
        """
        try:
            if is_url(text):
                url = text.strip()
                existing = self.store.find_by_exact_text(table, owner_id, url)
                if existing:
                    log.info(f"Duplicate URL for owner {owner_id}: existing record {existing}")
                    return DuplicationResult(is_duplicate=True, existing_id=existing, match_type="url")
                return DuplicationResult(is_duplicate=False)

            if len(text) <= self.hash_min_length:
                return DuplicationResult(is_duplicate=False)

            text_hash = simple_hash(text)
            since = now_ms() - self.window_hours * 60 * 60 * 1000
            for record_id, existing_text in self.store.recent_texts(table, owner_id, since, self.scan_limit):
                if existing_text and simple_hash(existing_text) == text_hash:
                    log.info(f"Duplicate text for owner {owner_id}: existing record {record_id}")
                    return DuplicationResult(
                        is_duplicate=True,
                        existing_id=record_id,
                        match_type="hash",
                        text_hash=text_hash,
                    )
            return DuplicationResult(is_duplicate=False, text_hash=text_hash)

        except Exception as e:
            log.error(f"Error checking for duplicates: {e}")
            return DuplicationResult(is_duplicate=False)
