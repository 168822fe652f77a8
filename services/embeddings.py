# ──────────────────────────────────────────────────────────────────────────────
# File: services/embeddings.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Local embedding helpers for memory records.
- Primary provider: SentenceTransformers with all-MiniLM-L6-v2 (384 dims)
- Ollama embeddings API (http://localhost:11434/api/embed)
- Dev provider: deterministic token feature-hashing, no model download
Configure via env:
  EMBEDDINGS_PROVIDER=sentence_transformers|ollama|hashing
  EMBEDDINGS_MODEL=all-MiniLM-L6-v2 (or other sentence-transformer model)
  SENTENCE_TRANSFORMER_MODEL_PATH=./sentence_transformer_model (local model path)

Input is truncated to EMBEDDING_MAX_CHARS before encoding. Empty input and
provider failures return None instead of raising.
"""
from __future__ import annotations
import asyncio
import hashlib
import re
import struct
from pathlib import Path
from typing import Optional
import logging

import httpx
import numpy as np

from config import settings

logger = logging.getLogger(__name__)

# Default dimensions for all-MiniLM-L6-v2
DEFAULT_DIM = 384
MAX_EMBED_CHARS = 8000
PROVIDERS = ('sentence_transformers', 'ollama', 'hashing')

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class Embeddings:
    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        dim: int | None = None,
        max_chars: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.provider = provider or settings.embeddings_provider
        if self.provider not in PROVIDERS:
            raise ValueError(f"Unknown embeddings provider '{self.provider}'")
        self.model = model or (settings.embeddings_model if self.provider != 'hashing' else 'token-hash')
        self.dim = dim or settings.embeddings_dim or DEFAULT_DIM
        self.max_chars = max_chars or settings.embedding_max_chars or MAX_EMBED_CHARS
        self.model_path = settings.sentence_transformer_model_path
        self._sentence_transformer = None
        self._transport = transport

    @property
    def model_id(self) -> str:
        """Identifier stored next to every vector this provider produces."""
        if self.provider == 'hashing':
            return f"hashing/{self.model}-{self.dim}"
        return f"{self.provider}/{self.model}"

    def prepare(self, text: Optional[str]) -> Optional[str]:
        """Truncate to the character cap; None when nothing is left to embed."""
        if not text or not text.strip():
            return None
        truncated = text[: self.max_chars]
        if not truncated.strip():
            return None
        return truncated

    async def embed(self, text: Optional[str]) -> Optional[list[float]]:
        prepared = self.prepare(text)
        if prepared is None:
            return None
        vectors = await self._encode_safely([prepared])
        if not vectors:
            return None
        return vectors[0]

    async def embed_batch(self, texts: list[Optional[str]]) -> list[Optional[list[float]]]:
        """Embed many texts; output is aligned with input, None for empty slots."""
        if not texts:
            return []
        prepared = [self.prepare(t) for t in texts]
        live = [t for t in prepared if t is not None]
        if not live:
            return [None] * len(texts)

        vectors = await self._encode_safely(live)
        if vectors is None or len(vectors) != len(live):
            return [None] * len(texts)

        remaining = iter(vectors)
        return [next(remaining) if t is not None else None for t in prepared]

    async def _encode_safely(self, texts: list[str]) -> Optional[list[list[float]]]:
        try:
            return await self._encode(texts)
        except Exception as e:
            logger.error(f"Embedding generation failed with provider '{self.provider}': {e}")
            return None

    async def _encode(self, texts: list[str]) -> list[list[float]]:
        if self.provider == 'sentence_transformers':
            return await asyncio.to_thread(self._sentence_transformers_encode, texts)
        if self.provider == 'ollama':
            return await self._ollama_encode(texts)
        return [self._hashing_embed(t) for t in texts]

    def _sentence_transformers_encode(self, texts: list[str]) -> list[list[float]]:
        if self._sentence_transformer is None:
            self._load_sentence_transformer()
        embeddings = self._sentence_transformer.encode(texts, convert_to_numpy=True)
        return [row.tolist() for row in embeddings]

    def _load_sentence_transformer(self):
        """Load sentence transformer model."""
        try:
            from sentence_transformers import SentenceTransformer

            local_path = Path(self.model_path)
            if local_path.exists() and local_path.is_dir():
                logger.info(f"Loading local SentenceTransformer model from {local_path}")
                self._sentence_transformer = SentenceTransformer(str(local_path))
            else:
                logger.info(f"Loading SentenceTransformer model: {self.model}")
                self._sentence_transformer = SentenceTransformer(self.model)

            if hasattr(self._sentence_transformer, 'get_sentence_embedding_dimension'):
                actual_dim = self._sentence_transformer.get_sentence_embedding_dimension()
                if actual_dim and actual_dim != self.dim:
                    logger.info(f"Updating embedding dimensions from {self.dim} to {actual_dim}")
                    self.dim = actual_dim

        except ImportError:
            logger.error("sentence-transformers not installed. Run: pip install sentence-transformers")
            raise

    async def _ollama_encode(self, texts: list[str]) -> list[list[float]]:
        async with httpx.AsyncClient(
            timeout=settings.embeddings_timeout_seconds,
            transport=self._transport,
        ) as client:
            response = await client.post(
                settings.ollama_embed_url,
                json={"model": self.model, "input": texts},
            )
            response.raise_for_status()
            payload = response.json()
        vectors = payload.get('embeddings')
        if not vectors:
            raise RuntimeError('No embedding returned from Ollama')
        return vectors

    def _hashing_embed(self, text: str) -> list[float]:
        # Bag of hashed tokens, L2 normalised; shared words give similar vectors
        vec = np.zeros(self.dim, dtype=np.float32)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha1(token.encode('utf-8')).digest()
            vec[int.from_bytes(digest[:4], 'little') % self.dim] += 1.0
        norm = float(np.linalg.norm(vec))
        if norm > 0:
            vec /= norm
        return vec.tolist()

    @staticmethod
    def pack_f32(array: list[float]) -> bytes:
        return struct.pack('<%sf' % len(array), *array)


_embeddings: Optional[Embeddings] = None

def get_embeddings_service() -> Embeddings:
    """Global embeddings provider built from settings."""
    global _embeddings
    if _embeddings is None:
        _embeddings = Embeddings()
    return _embeddings
