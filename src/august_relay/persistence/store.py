from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger

from august_relay.models import utc_now


class ChatStore:
    """sqlite-backed chat history: chats, their messages and tool auth status."""

    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def commit(self) -> None:
        self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise

    # -- chats --------------------------------------------------------------

    def create_chat(self, title: str = "New Chat", *, chat_id: str | None = None, metadata: dict | None = None) -> dict:
        cid = chat_id or str(uuid4())
        now = utc_now()
        with self.transaction():
            self.execute(
                """
                INSERT INTO chats (id, title, created_at, updated_at, metadata_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (cid, title.strip() or "New Chat", now, now, json.dumps(metadata or {}, ensure_ascii=True)),
            )
        logger.debug(f"Created chat {cid}")
        return self._get_chat_row(cid) or {}

    def list_chats(self, *, limit: int = 50) -> list[dict]:
        rows = self.execute(
            """
            SELECT id, title, created_at, updated_at, metadata_json
            FROM chats
            ORDER BY updated_at DESC, created_at DESC
            LIMIT ?
            """,
            (max(1, limit),),
        ).fetchall()
        return [dict(row) for row in rows]

    def get_chat_by_id(self, chat_id: str) -> dict | None:
        chat = self._get_chat_row(chat_id)
        if chat is None:
            return None
        rows = self.execute(
            """
            SELECT id, chat_id, seq, role, content, created_at, is_partial, is_error
            FROM messages
            WHERE chat_id = ?
            ORDER BY seq ASC
            """,
            (chat_id,),
        ).fetchall()
        chat["messages"] = [self._message_dict(row) for row in rows]
        return chat

    def update_chat_title(self, chat_id: str, title: str) -> dict:
        if self._get_chat_row(chat_id) is None:
            raise ValueError(f"Chat not found: {chat_id}")
        with self.transaction():
            self.execute(
                "UPDATE chats SET title = ?, updated_at = ? WHERE id = ?",
                (title.strip(), utc_now(), chat_id),
            )
        return self._get_chat_row(chat_id) or {}

    def delete_chat(self, chat_id: str) -> bool:
        with self.transaction():
            cursor = self.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
        return cursor.rowcount > 0

    # -- messages -----------------------------------------------------------

    def create_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        *,
        is_partial: bool = False,
        is_error: bool = False,
    ) -> dict:
        if self._get_chat_row(chat_id) is None:
            raise ValueError(f"Chat not found: {chat_id}")
        row = self.execute(
            "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE chat_id = ?",
            (chat_id,),
        ).fetchone()
        next_seq = int(row["max_seq"]) + 1
        message_id = str(uuid4())
        now = utc_now()
        with self.transaction():
            self.execute(
                """
                INSERT INTO messages (id, chat_id, seq, role, content, created_at, is_partial, is_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (message_id, chat_id, next_seq, role, content, now, int(is_partial), int(is_error)),
            )
            self.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (now, chat_id))
        return {
            "id": message_id,
            "chat_id": chat_id,
            "seq": next_seq,
            "role": role,
            "content": content,
            "created_at": now,
            "is_partial": is_partial,
            "is_error": is_error,
        }

    def update_message(
        self,
        message_id: str,
        content: str,
        *,
        is_partial: bool = False,
        is_error: bool = False,
    ) -> dict | None:
        now = utc_now()
        with self.transaction():
            cursor = self.execute(
                "UPDATE messages SET content = ?, is_partial = ?, is_error = ? WHERE id = ?",
                (content, int(is_partial), int(is_error), message_id),
            )
            if cursor.rowcount == 0:
                return None
            self.execute(
                "UPDATE chats SET updated_at = ? WHERE id = (SELECT chat_id FROM messages WHERE id = ?)",
                (now, message_id),
            )
        row = self.execute(
            """
            SELECT id, chat_id, seq, role, content, created_at, is_partial, is_error
            FROM messages WHERE id = ?
            """,
            (message_id,),
        ).fetchone()
        return self._message_dict(row) if row is not None else None

    # -- tool auth status ---------------------------------------------------

    def load_auth_status(self) -> dict[str, bool]:
        rows = self.execute("SELECT service, authenticated FROM auth_status").fetchall()
        return {str(row["service"]): bool(row["authenticated"]) for row in rows}

    def save_auth_status(self, service: str, authenticated: bool) -> None:
        with self.transaction():
            self.execute(
                """
                INSERT INTO auth_status (service, authenticated, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(service) DO UPDATE SET authenticated = excluded.authenticated,
                                                   updated_at = excluded.updated_at
                """,
                (service, int(authenticated), utc_now()),
            )

    def _get_chat_row(self, chat_id: str) -> dict | None:
        row = self.execute(
            "SELECT id, title, created_at, updated_at, metadata_json FROM chats WHERE id = ? LIMIT 1",
            (chat_id,),
        ).fetchone()
        return dict(row) if row is not None else None

    @staticmethod
    def _message_dict(row: sqlite3.Row) -> dict:
        message = dict(row)
        message["is_partial"] = bool(message["is_partial"])
        message["is_error"] = bool(message["is_error"])
        return message

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                is_partial INTEGER NOT NULL DEFAULT 0 CHECK (is_partial IN (0, 1)),
                is_error INTEGER NOT NULL DEFAULT 0 CHECK (is_error IN (0, 1)),
                UNIQUE(chat_id, seq)
            );

            CREATE TABLE IF NOT EXISTS auth_status (
                service TEXT PRIMARY KEY,
                authenticated INTEGER NOT NULL CHECK (authenticated IN (0, 1)),
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_chat_seq
                ON messages(chat_id, seq);
            CREATE INDEX IF NOT EXISTS idx_chats_updated
                ON chats(updated_at);
            """
        )
        self._conn.commit()
