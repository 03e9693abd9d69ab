"""
Conversation persistence for the manual Q&A assistant.

Stores:
- conversations (owned by a single user, with a display title)
- messages (append-only, ordered by insertion; assistant turns carry citations)
- search log (one row per chat turn or search request, for analytics)
"""
from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .config import CONVERSATION_DB_PATH
from .db_migrations import SqliteMigration, apply_sqlite_migrations, connect_sqlite, utcnow_iso
from .errors import PersistenceError
from .models import ChatMessage, Citation
from .observability import get_logger

logger = get_logger(__name__)

TITLE_PREVIEW_CHARS = 50


def provisional_title(message: str) -> str:
    """First 50 characters of the opening message, with an ellipsis if cut."""
    text = " ".join(str(message or "").split())
    if len(text) > TITLE_PREVIEW_CHARS:
        return text[:TITLE_PREVIEW_CHARS] + "..."
    return text or "New conversation"


class ConversationStore:
    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path) if db_path else CONVERSATION_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = connect_sqlite(self.db_path)
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise PersistenceError("conversation store connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(f"conversation store error: {exc}") from exc
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error as exc:
                logger.warning("sqlite_commit_on_close_failed", path=str(self.db_path), error=str(exc))
            self._conn.close()
            self._conn = None

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    def _ensure_schema(self):
        migrations = [
            SqliteMigration(
                version=1,
                name="create_conversations_and_messages",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS conversations (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id, updated_at)",
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                        role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
                        content TEXT NOT NULL,
                        citations_json TEXT NOT NULL DEFAULT '[]',
                        created_at TEXT NOT NULL
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id)",
                ),
            ),
            SqliteMigration(
                version=2,
                name="create_search_log",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS search_log (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id TEXT,
                        query TEXT NOT NULL,
                        search_type TEXT NOT NULL,
                        results_count INTEGER NOT NULL DEFAULT 0,
                        filters_json TEXT NOT NULL DEFAULT '{}',
                        created_at TEXT NOT NULL
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_search_log_created ON search_log(created_at)",
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(
                conn,
                component="conversation_store",
                migrations=migrations,
            )

    # --- Conversations ---

    def create_conversation(self, user_id: str, title: str) -> str:
        conversation_id = str(uuid.uuid4())
        now = utcnow_iso()
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO conversations (id, user_id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, str(user_id), str(title), now, now),
            )
        logger.info("conversation_created", conversation_id=conversation_id, user_id=str(user_id))
        return conversation_id

    def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT id, user_id, title, created_at, updated_at FROM conversations WHERE id = ?",
                (str(conversation_id),),
            ).fetchone()
        return dict(row) if row else None

    def list_conversations(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, title, created_at, updated_at
                FROM conversations
                WHERE user_id = ?
                ORDER BY updated_at DESC, id DESC
                LIMIT ?
                """,
                (str(user_id), int(limit)),
            ).fetchall()
        return [dict(row) for row in rows]

    def set_title(self, conversation_id: str, title: str):
        with self._connection() as conn:
            conn.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
                (str(title), utcnow_iso(), str(conversation_id)),
            )

    # --- Messages ---

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> ChatMessage:
        try:
            raw_citations = json.loads(row["citations_json"] or "[]")
        except (TypeError, ValueError):
            raw_citations = []
        citations = tuple(Citation.from_dict(item) for item in raw_citations if isinstance(item, dict))
        return ChatMessage(
            id=int(row["id"]),
            role=str(row["role"]),
            content=str(row["content"]),
            citations=citations,
            created_at=row["created_at"],
        )

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        citations: tuple[Citation, ...] | list[Citation] = (),
    ) -> int:
        payload = json.dumps([c.to_dict() for c in citations], ensure_ascii=False)
        now = utcnow_iso()
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO messages (conversation_id, role, content, citations_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (str(conversation_id), str(role), str(content), payload, now),
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, str(conversation_id)),
            )
            return int(cursor.lastrowid)

    def recent_messages(self, conversation_id: str, limit: int) -> list[ChatMessage]:
        """The last `limit` messages, oldest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, role, content, citations_json, created_at
                FROM messages
                WHERE conversation_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (str(conversation_id), int(limit)),
            ).fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    def count_messages(self, conversation_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS cnt FROM messages WHERE conversation_id = ?",
                (str(conversation_id),),
            ).fetchone()
        return int(row["cnt"]) if row else 0

    # --- Search log ---

    def log_search(
        self,
        *,
        user_id: str | None,
        query: str,
        search_type: str,
        results_count: int,
        filters: dict[str, Any] | None = None,
    ):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO search_log (user_id, query, search_type, results_count, filters_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    str(query),
                    str(search_type),
                    int(results_count),
                    json.dumps(filters or {}, ensure_ascii=False),
                    utcnow_iso(),
                ),
            )

    def search_log_entries(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, query, search_type, results_count, filters_json, created_at
                FROM search_log
                ORDER BY id DESC
                LIMIT ?
                """,
                (int(limit),),
            ).fetchall()
        entries = []
        for row in rows:
            entry = dict(row)
            entry["filters"] = json.loads(entry.pop("filters_json") or "{}")
            entries.append(entry)
        return entries
