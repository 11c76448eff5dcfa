"""
Persistent per-document session records.

One record per document identity: the extracted text, whether the document is
answered through retrieval, the last UI state string and the ordered chat history.
Records are never evicted automatically.
"""
from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .config import SESSION_DB_PATH
from .db_migrations import SqliteMigration, apply_sqlite_migrations, utcnow_iso
from .errors import TransientIOError, ValidationError
from .observability import get_logger

logger = get_logger(__name__)

UI_PROCESSING = "Processing PDF..."
UI_INITIALIZING_RAG = "Initializing RAG pipeline..."
UI_READY = "Ready to chat."

_VALID_ROLES = {"user", "assistant", "model"}


@dataclass
class ChatTurn:
    role: str
    content: str

    def normalized_role(self) -> str:
        return "assistant" if self.role == "model" else self.role


@dataclass
class DocumentSession:
    url: str
    text: str = ""
    chat_history: list[ChatTurn] = field(default_factory=list)
    is_rag: bool = False
    ui_state: str = UI_PROCESSING

    def history_payload(self) -> list[dict[str, str]]:
        return [asdict(turn) for turn in self.chat_history]


def _history_from_json(raw: str | None) -> list[ChatTurn]:
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning("session_history_unreadable")
        return []
    turns: list[ChatTurn] = []
    for item in items if isinstance(items, list) else []:
        if isinstance(item, dict) and item.get("role") in _VALID_ROLES:
            turns.append(ChatTurn(role=str(item["role"]), content=str(item.get("content") or "")))
    return turns


class SessionStore:
    """SQLite-backed CRUD over `DocumentSession` records keyed by URL."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else SESSION_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error:
            pass
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise TransientIOError("session store connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise TransientIOError(
                    "session store operation failed",
                    {"db_path": str(self.db_path), "error": str(exc)},
                ) from exc

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    def _ensure_schema(self):
        def _add_updated_index(conn: sqlite3.Connection):
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_updated ON document_sessions(updated_at)")

        migrations = [
            SqliteMigration(
                version=1,
                name="create_document_sessions",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS document_sessions (
                        url TEXT PRIMARY KEY,
                        text TEXT NOT NULL DEFAULT '',
                        chat_history_json TEXT NOT NULL DEFAULT '[]',
                        is_rag INTEGER NOT NULL DEFAULT 0,
                        ui_state TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """,
                ),
            ),
            SqliteMigration(
                version=2,
                name="index_sessions_by_update",
                runner=_add_updated_index,
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="session_store", migrations=migrations)

    def get(self, url: str) -> DocumentSession | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT url, text, chat_history_json, is_rag, ui_state FROM document_sessions WHERE url = ?",
                (url,),
            ).fetchone()
        if row is None:
            return None
        return DocumentSession(
            url=row["url"],
            text=row["text"],
            chat_history=_history_from_json(row["chat_history_json"]),
            is_rag=bool(row["is_rag"]),
            ui_state=row["ui_state"],
        )

    def put(self, session: DocumentSession) -> None:
        if not session.url:
            raise ValidationError("Session url is required", field="url")
        now = utcnow_iso()
        history_json = json.dumps(session.history_payload(), ensure_ascii=True)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO document_sessions (url, text, chat_history_json, is_rag, ui_state, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(url) DO UPDATE SET
                    text = excluded.text,
                    chat_history_json = excluded.chat_history_json,
                    is_rag = excluded.is_rag,
                    ui_state = excluded.ui_state,
                    updated_at = excluded.updated_at
                """,
                (session.url, session.text, history_json, int(session.is_rag), session.ui_state, now, now),
            )

    def urls(self) -> list[str]:
        with self._connection() as conn:
            rows = conn.execute("SELECT url FROM document_sessions ORDER BY updated_at DESC").fetchall()
        return [row["url"] for row in rows]
