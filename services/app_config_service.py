# ──────────────────────────────────────────────────────────────────────────────
# File: services/app_config_service.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Runtime-tunable settings stored in the `app_settings` table.

Values default to the environment Settings and are overridden per key by
`set_config`. Handlers receive this service through dependency injection.
"""
from __future__ import annotations
import json
import logging
from typing import Any, Dict, Optional

from config import Settings, settings as default_settings
from database import DatabaseManager
from services.errors import InvalidRequest
from services.record_store import now_ms

logger = logging.getLogger(__name__)


def default_config(settings: Settings) -> Dict[str, Any]:
    return {
        "search_top_k": settings.search_default_top_k,
        "search_min_similarity": settings.search_min_similarity,
        "dedup_enabled": settings.capture_dedup_enabled,
        "enrich_in_background": settings.enrich_in_background,
        "chat_model": settings.chat_model,
        "chat_top_k": settings.chat_top_k,
        "chat_min_similarity": settings.chat_min_similarity,
        "analysis_enabled": settings.analysis_enabled,
    }


class AppConfigService:
    def __init__(self, db: DatabaseManager, settings: Optional[Settings] = None):
        self.db = db
        self.defaults = default_config(settings or default_settings)

    def get_config(self) -> Dict[str, Any]:
        config = dict(self.defaults)
        with self.db.get_db_context() as conn:
            rows = conn.execute("SELECT key, value_json FROM app_settings").fetchall()
        for row in rows:
            if row["key"] not in config:
                continue
            try:
                config[row["key"]] = json.loads(row["value_json"])
            except ValueError:
                logger.warning(f"Ignoring unreadable app setting {row['key']}")
        return config

    def get(self, key: str, default: Any = None) -> Any:
        return self.get_config().get(key, default)

    def set_config(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Persist a partial update; unknown keys are rejected."""
        unknown = set(updates) - set(self.defaults)
        if unknown:
            raise InvalidRequest(f"Unknown settings: {', '.join(sorted(unknown))}")

        timestamp = now_ms()
        with self.db.get_db_context() as conn:
            for key, value in updates.items():
                if value is None:
                    conn.execute("DELETE FROM app_settings WHERE key = ?", (key,))
                    continue
                conn.execute(
                    """
                    INSERT INTO app_settings (key, value_json, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at
                    """,
                    (key, json.dumps(value), timestamp),
                )
        logger.info(f"Updated app settings: {', '.join(sorted(updates))}")
        return self.get_config()
