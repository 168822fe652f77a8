# ──────────────────────────────────────────────────────────────────────────────
# File: services/errors.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Error kinds shared by the capture, retrieval and chat services.

Callers branch on `error.kind`, never on message text. Soft failures
(embedding, index, enrichment, drift) are normally logged and absorbed by the
services; only the kinds in HTTP_STATUS reach API callers.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Kinds of failure raised or logged by the memory services."""
    EMBEDDING_UNAVAILABLE = "embedding_unavailable"
    INDEX_UNAVAILABLE = "index_unavailable"
    ENRICHMENT_FAILED = "enrichment_failed"
    DUPLICATE = "duplicate"
    RECORD_NOT_FOUND = "record_not_found"
    DRIFTED_INDEX_ENTRY = "drifted_index_entry"
    INVALID_REQUEST = "invalid_request"
    COMPLETION_FAILED = "completion_failed"


HTTP_STATUS = {
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.RECORD_NOT_FOUND: 404,
    ErrorKind.COMPLETION_FAILED: 502,
    ErrorKind.EMBEDDING_UNAVAILABLE: 503,
    ErrorKind.INDEX_UNAVAILABLE: 503,
}


class MemoryServiceError(Exception):
    """Base error carrying an ErrorKind."""

    kind: ErrorKind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def status_code(self) -> int:
        return HTTP_STATUS.get(self.kind, 500)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"success": False, "error": self.message, "kind": self.kind.value}
        if self.details:
            payload["details"] = self.details
        return payload


class EmbeddingUnavailable(MemoryServiceError):
    kind = ErrorKind.EMBEDDING_UNAVAILABLE


class IndexUnavailable(MemoryServiceError):
    kind = ErrorKind.INDEX_UNAVAILABLE


class EnrichmentFailed(MemoryServiceError):
    kind = ErrorKind.ENRICHMENT_FAILED


class RecordNotFound(MemoryServiceError):
    kind = ErrorKind.RECORD_NOT_FOUND


class InvalidRequest(MemoryServiceError):
    kind = ErrorKind.INVALID_REQUEST


class CompletionFailed(MemoryServiceError):
    kind = ErrorKind.COMPLETION_FAILED
