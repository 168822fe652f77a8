from __future__ import annotations

import logging
import os
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices, model_validator
from typing import Optional


logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).parent.resolve()

class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    db_path: Path = Field(
        default=BASE_DIR / "memory.db",
        validation_alias=AliasChoices('db_path', 'DB_PATH', 'SQLITE_DB')
    )
    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices('log_level', 'LOG_LEVEL')
    )

    # Security settings
    secret_key: str = Field(
        default="generate-secure-key-in-production",
        validation_alias=AliasChoices('secret_key', 'SECRET_KEY')
    )
    api_key: str = Field(
        default="generate-secure-api-key-in-production",
        validation_alias=AliasChoices('api_key', 'API_KEY')
    )
    admin_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('admin_key', 'ADMIN_KEY')
    )
    # Owner assigned to requests authenticated with the static API key
    default_owner_id: str = Field(
        default="default",
        validation_alias=AliasChoices('default_owner_id', 'DEFAULT_OWNER_ID')
    )
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7

    environment: str = Field(
        default="development",
        validation_alias=AliasChoices('environment', 'ENVIRONMENT', 'ENV')
    )

    # CORS configuration
    cors_origins: str = Field(
        default="http://localhost:8082,http://127.0.0.1:8082",
        validation_alias=AliasChoices('cors_origins', 'CORS_ORIGINS')
    )
    cors_credentials: bool = Field(
        default=True,
        validation_alias=AliasChoices('cors_credentials', 'CORS_CREDENTIALS')
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() in ('production', 'prod')

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as list."""
        return [origin.strip() for origin in self.cors_origins.split(',') if origin.strip()]

    # Embeddings
    embeddings_provider: str = Field(
        default="sentence_transformers",  # sentence_transformers, ollama, hashing
        validation_alias=AliasChoices('embeddings_provider', 'EMBEDDINGS_PROVIDER')
    )
    embeddings_model: str = Field(
        default="all-MiniLM-L6-v2",
        validation_alias=AliasChoices('embeddings_model', 'EMBEDDINGS_MODEL')
    )
    embeddings_dim: int = Field(
        default=384,
        validation_alias=AliasChoices('embeddings_dim', 'EMBEDDINGS_DIM')
    )
    # Longer input is truncated before it reaches the model
    embedding_max_chars: int = Field(
        default=8000,
        validation_alias=AliasChoices('embedding_max_chars', 'EMBEDDING_MAX_CHARS')
    )
    sentence_transformer_model_path: str = Field(
        default="./sentence_transformer_model",
        validation_alias=AliasChoices('sentence_transformer_model_path', 'SENTENCE_TRANSFORMER_MODEL_PATH')
    )
    ollama_embed_url: str = Field(
        default="http://localhost:11434/api/embed",
        validation_alias=AliasChoices('ollama_embed_url', 'OLLAMA_EMBED_URL')
    )
    embeddings_timeout_seconds: float = Field(
        default=30.0,
        validation_alias=AliasChoices('embeddings_timeout_seconds', 'EMBEDDINGS_TIMEOUT_SECONDS')
    )

    # Vector index: sqlite_vec, memory, none
    vector_index_backend: str = Field(
        default="sqlite_vec",
        validation_alias=AliasChoices('vector_index_backend', 'VECTOR_INDEX_BACKEND')
    )
    sqlite_vec_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('sqlite_vec_path', 'SQLITE_VEC_PATH')
    )

    # Search defaults
    search_default_top_k: int = Field(
        default=10,
        validation_alias=AliasChoices('search_default_top_k', 'SEARCH_DEFAULT_TOP_K')
    )
    search_min_similarity: float = Field(
        default=0.7,
        validation_alias=AliasChoices('search_min_similarity', 'SEARCH_MIN_SIMILARITY')
    )
    search_overfetch_multiplier: int = Field(
        default=3,
        validation_alias=AliasChoices('search_overfetch_multiplier', 'SEARCH_OVERFETCH_MULTIPLIER')
    )
    search_overfetch_cap: int = Field(
        default=50,
        validation_alias=AliasChoices('search_overfetch_cap', 'SEARCH_OVERFETCH_CAP')
    )
    legacy_scan_limit: int = Field(
        default=100,
        validation_alias=AliasChoices('legacy_scan_limit', 'LEGACY_SCAN_LIMIT')
    )

    # Capture deduplication
    capture_dedup_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices('capture_dedup_enabled', 'CAPTURE_DEDUP_ENABLED')
    )
    dedup_hash_min_length: int = Field(
        default=50,
        validation_alias=AliasChoices('dedup_hash_min_length', 'DEDUP_HASH_MIN_LENGTH')
    )
    dedup_window_hours: int = Field(
        default=24,
        validation_alias=AliasChoices('dedup_window_hours', 'DEDUP_WINDOW_HOURS')
    )
    dedup_scan_limit: int = Field(
        default=100,
        validation_alias=AliasChoices('dedup_scan_limit', 'DEDUP_SCAN_LIMIT')
    )
    url_max_length: int = Field(
        default=500,
        validation_alias=AliasChoices('url_max_length', 'URL_MAX_LENGTH')
    )

    # URL enrichment
    enrichment_timeout_seconds: float = Field(
        default=15.0,
        validation_alias=AliasChoices('enrichment_timeout_seconds', 'ENRICHMENT_TIMEOUT_SECONDS')
    )
    enrichment_user_agent: str = Field(
        default="Mozilla/5.0 (compatible; MyMemoryBot/1.0)",
        validation_alias=AliasChoices('enrichment_user_agent', 'ENRICHMENT_USER_AGENT')
    )
    enrichment_max_text_chars: int = Field(
        default=10000,
        validation_alias=AliasChoices('enrichment_max_text_chars', 'ENRICHMENT_MAX_TEXT_CHARS')
    )
    webpage_max_content_chars: int = Field(
        default=8000,
        validation_alias=AliasChoices('webpage_max_content_chars', 'WEBPAGE_MAX_CONTENT_CHARS')
    )
    enrich_in_background: bool = Field(
        default=False,
        validation_alias=AliasChoices('enrich_in_background', 'ENRICH_IN_BACKGROUND')
    )
    transcript_service_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('transcript_service_url', 'TRANSCRIPT_SERVICE_URL')
    )
    transcript_language: str = Field(
        default="en",
        validation_alias=AliasChoices('transcript_language', 'TRANSCRIPT_LANGUAGE')
    )

    # RAG chat
    ollama_chat_url: str = Field(
        default="http://localhost:11434/api/chat",
        validation_alias=AliasChoices('ollama_chat_url', 'OLLAMA_CHAT_URL')
    )
    chat_model: str = Field(
        default="llama3.2",
        validation_alias=AliasChoices('chat_model', 'CHAT_MODEL')
    )
    chat_timeout_seconds: float = Field(
        default=60.0,
        validation_alias=AliasChoices('chat_timeout_seconds', 'CHAT_TIMEOUT_SECONDS')
    )
    chat_top_k: int = Field(
        default=5,
        validation_alias=AliasChoices('chat_top_k', 'CHAT_TOP_K')
    )
    chat_min_similarity: float = Field(
        default=0.6,
        validation_alias=AliasChoices('chat_min_similarity', 'CHAT_MIN_SIMILARITY')
    )
    chat_history_limit: int = Field(
        default=20,
        validation_alias=AliasChoices('chat_history_limit', 'CHAT_HISTORY_LIMIT')
    )

    # AI analysis of saved memories
    analysis_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices('analysis_enabled', 'ANALYSIS_ENABLED')
    )
    analysis_model: str = Field(
        default="llama3.2",
        validation_alias=AliasChoices('analysis_model', 'ANALYSIS_MODEL')
    )
    analysis_max_chars: int = Field(
        default=4000,
        validation_alias=AliasChoices('analysis_max_chars', 'ANALYSIS_MAX_CHARS')
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"   # prevents crashes if other stray keys exist
    )

    @model_validator(mode='after')
    def generate_secure_keys(self) -> 'Settings':
        """Generate secure keys if defaults are still being used."""
        if self.secret_key == "generate-secure-key-in-production":
            self.secret_key = os.urandom(32).hex()
            logger.warning("Generated random SECRET_KEY. Set SECRET_KEY env var for production!")

        if self.api_key == "generate-secure-api-key-in-production":
            self.api_key = os.urandom(32).hex()
            logger.warning("Generated random API_KEY. Set API_KEY env var for production!")

        return self

settings = Settings()
