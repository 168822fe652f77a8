"""
SQLite connection management and schema for the memory store.

One connection per thread, WAL journaling, schema created on startup.
Vectors live as JSON in the record rows; the sqlite-vec index keeps its own
table (see services/vector_index.py).
"""

import sqlite3
import threading
import time
import logging
import os
from typing import Dict, Any
from contextlib import contextmanager
from pathlib import Path

from config import settings

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS memory (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        text TEXT NOT NULL,
        context_json TEXT,
        tag TEXT,
        priority TEXT,
        embedding_vector TEXT,
        embedding_model TEXT,
        search_keywords TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memory_user_created ON memory(user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS posts (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        type TEXT,
        original_text TEXT NOT NULL,
        generated_output TEXT,
        status TEXT DEFAULT 'draft',
        context_json TEXT,
        embedding_vector TEXT,
        embedding_model TEXT,
        search_keywords TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_posts_user_created ON posts(user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value_json TEXT NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_conversations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL REFERENCES chat_conversations(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        sources_json TEXT,
        created_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_conversation ON chat_messages(conversation_id, created_at)",
]

PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA temp_store=memory",
)


class DatabaseManager:
    """Per-thread SQLite connections for the record, settings and chat tables."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path or str(settings.db_path)
        self._connections: Dict[int, sqlite3.Connection] = {}
        self._lock = threading.RLock()
        self._stats = {
            'opened': 0,
            'open': 0,
            'failed': 0,
            'last_health_check': None
        }

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        for pragma in PRAGMAS:
            conn.execute(pragma)
        return conn

    def get_connection(self) -> sqlite3.Connection:
        """Connection owned by the calling thread, reopened if it went stale."""
        thread_id = threading.get_ident()

        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is not None:
                try:
                    conn.execute("SELECT 1")
                    return conn
                except sqlite3.Error:
                    del self._connections[thread_id]
                    self._stats['open'] -= 1

            try:
                conn = self._open()
            except sqlite3.Error as e:
                self._stats['failed'] += 1
                logger.error(f"Could not open {self.db_path}: {e}")
                raise

            self._connections[thread_id] = conn
            self._stats['opened'] += 1
            self._stats['open'] += 1
            logger.debug(f"Opened database connection for thread {thread_id}")
            return conn

    @contextmanager
    def get_db_context(self):
        """Yield this thread's connection; commit on success, roll back on error."""
        conn = self.get_connection()
        try:
            yield conn
        except Exception as e:
            conn.rollback()
            logger.error(f"Database operation failed: {e}")
            raise
        else:
            conn.commit()

    def close_all_connections(self):
        with self._lock:
            for conn in self._connections.values():
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._connections.clear()
            self._stats['open'] = 0
            logger.info("Closed all database connections")

    def table_counts(self) -> Dict[str, int]:
        with self.get_db_context() as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ('memory', 'posts')
            }

    def health_check(self) -> Dict[str, Any]:
        """Connection test, file size and row counts for /health."""
        info: Dict[str, Any] = {
            'path': self.db_path,
            'exists': os.path.exists(self.db_path),
            'size_mb': 0,
            'ok': False,
            'stats': dict(self._stats),
        }
        try:
            if info['exists']:
                info['size_mb'] = round(os.path.getsize(self.db_path) / (1024 * 1024), 2)
            info['records'] = self.table_counts()
            info['ok'] = True
            self._stats['last_health_check'] = time.time()
        except sqlite3.Error as e:
            logger.error(f"Database health check failed: {e}")
            info['error'] = str(e)
        return info

    def initialize_database(self):
        """Create tables and indexes that do not exist yet."""
        with self.get_db_context() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info(f"Database schema ready at {self.db_path}")


_db_manager = None
_manager_lock = threading.Lock()

def get_db_manager() -> DatabaseManager:
    """Process-wide manager for the configured database path."""
    global _db_manager
    if _db_manager is None:
        with _manager_lock:
            if _db_manager is None:
                Path(settings.db_path).parent.mkdir(parents=True, exist_ok=True)
                _db_manager = DatabaseManager()
    return _db_manager

def close_db_connections():
    if _db_manager:
        _db_manager.close_all_connections()

def create_test_db(test_db_path: str) -> DatabaseManager:
    """Fresh, initialized database at `test_db_path` (any old file is removed)."""
    Path(test_db_path).parent.mkdir(parents=True, exist_ok=True)
    if os.path.exists(test_db_path):
        os.remove(test_db_path)
    manager = DatabaseManager(test_db_path)
    manager.initialize_database()
    return manager
