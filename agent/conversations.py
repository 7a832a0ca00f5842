"""
Conversation storage.

Two kinds of conversation live here: the user-visible ones that scheduled
results are posted back to, and hidden throwaway sessions that host the
intermediate tool calls of a single scheduled run. Messages reference their
conversation with a foreign key, so a session must exist before anything is
written into it and deleting it removes its messages.
"""

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from scheduler.models import from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    last_message_preview TEXT NOT NULL DEFAULT '',
    hidden INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT,
    tool_call_id TEXT,
    tool_name TEXT,
    tool_calls TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages (conversation_id, created_at);
"""


@dataclass
class Conversation:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0
    last_message_preview: str = ""
    hidden: bool = False


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: Optional[str]
    created_at: datetime
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        title=row["title"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        message_count=row["message_count"],
        last_message_preview=row["last_message_preview"],
        hidden=bool(row["hidden"]),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        created_at=from_iso(row["created_at"]),
        tool_call_id=row["tool_call_id"],
        tool_name=row["tool_name"],
        tool_calls=json.loads(row["tool_calls"]) if row["tool_calls"] else None,
    )


class ConversationStore:
    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        with self._conn:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    def create_conversation(
        self,
        conversation_id: Optional[str] = None,
        title: str = "",
        hidden: bool = False,
    ) -> Conversation:
        now = utcnow()
        conversation = Conversation(
            id=conversation_id or str(uuid.uuid4()),
            title=title,
            created_at=now,
            updated_at=now,
            hidden=hidden,
        )
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO conversations (id, title, created_at, updated_at, hidden) "
                "VALUES (?, ?, ?, ?, ?)",
                (conversation.id, title, to_iso(now), to_iso(now), 1 if hidden else 0),
            )
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def list_conversations(self, include_hidden: bool = False) -> List[Conversation]:
        sql = "SELECT * FROM conversations"
        if not include_hidden:
            sql += " WHERE hidden = 0"
        sql += " ORDER BY updated_at DESC"
        with self._lock:
            rows = self._conn.execute(sql).fetchall()
        return [_row_to_conversation(row) for row in rows]

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        return cur.rowcount > 0

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: Optional[str],
        tool_call_id: Optional[str] = None,
        tool_name: Optional[str] = None,
        tool_calls: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        """Append a message without touching conversation metadata."""
        message_id = str(uuid.uuid4())
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO messages (id, conversation_id, role, content, tool_call_id, "
                "tool_name, tool_calls, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message_id, conversation_id, role, content, tool_call_id, tool_name,
                    json.dumps(tool_calls) if tool_calls else None, to_iso(utcnow()),
                ),
            )
        return message_id

    def messages(self, conversation_id: str) -> List[Message]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at, rowid",
                (conversation_id,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def post_result(self, conversation_id: str, content: str, preview: str) -> bool:
        """
        Append an assistant message and refresh the conversation's summary
        fields (message count, preview, updated_at) in one transaction.

        Returns False, writing nothing, if the conversation does not exist.
        """
        now = to_iso(utcnow())
        with self._lock:
            if self.get_conversation(conversation_id) is None:
                logger.warning("Cannot post result: conversation %s not found", conversation_id)
                return False
            with self._conn:
                self._conn.execute(
                    "INSERT INTO messages (id, conversation_id, role, content, created_at) "
                    "VALUES (?, ?, 'assistant', ?, ?)",
                    (str(uuid.uuid4()), conversation_id, content, now),
                )
                self._conn.execute(
                    "UPDATE conversations SET message_count = message_count + 1, "
                    "last_message_preview = ?, updated_at = ? WHERE id = ?",
                    (preview[:PREVIEW_LENGTH], now, conversation_id),
                )
        return True
