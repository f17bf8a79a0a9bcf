"""Conversation persistence backends."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Protocol

from coach_chat.types import Message

_logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    """Persistence collaborator called after every message state change."""

    def load_history(self) -> list[Message]:
        ...

    def append_or_update(self, message: Message) -> None:
        ...

    def load_offline_queue(self) -> list[str]:
        ...

    def save_offline_queue(self, message_ids: list[str]) -> None:
        ...

    def clear(self) -> None:
        ...


class InMemoryConversationStore:
    """Dict-backed store; insertion order is history order."""

    def __init__(self) -> None:
        self._messages: dict[str, Message] = {}
        self._queue: list[str] = []
        self.write_count = 0

    def load_history(self) -> list[Message]:
        return list(self._messages.values())

    def append_or_update(self, message: Message) -> None:
        self._messages[message.id] = message
        self.write_count += 1

    def load_offline_queue(self) -> list[str]:
        return list(self._queue)

    def save_offline_queue(self, message_ids: list[str]) -> None:
        self._queue = list(message_ids)

    def clear(self) -> None:
        self._messages.clear()
        self._queue.clear()

    def close(self) -> None:
        pass


class SqliteConversationStore:
    """SQLite-backed store.

    Messages are stored as JSON and upserted by id; the autoincrement
    ``position`` column fixes history order at first insert.
    """

    def __init__(
        self,
        db_path: str = "~/.coach_chat/conversation.db",
        conversation_id: str = "default",
    ) -> None:
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        self.conversation_id = conversation_id
        self._conn = sqlite3.connect(self.db_path)
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS messages (
                position INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                conversation_id TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS offline_queue (
                conversation_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                message_id TEXT NOT NULL,
                PRIMARY KEY (conversation_id, seq)
            );
            CREATE INDEX IF NOT EXISTS idx_msg_conv ON messages(conversation_id);
        """)
        self._conn.commit()

    def load_history(self) -> list[Message]:
        rows = self._conn.execute(
            "SELECT data FROM messages WHERE conversation_id = ? ORDER BY position",
            (self.conversation_id,),
        ).fetchall()
        messages: list[Message] = []
        for (data,) in rows:
            try:
                messages.append(Message.from_dict(json.loads(data)))
            except (ValueError, KeyError) as e:
                _logger.warning("Skipping unreadable stored message: %s", e)
        return messages

    def append_or_update(self, message: Message) -> None:
        self._conn.execute(
            "INSERT INTO messages (id, conversation_id, data, updated_at) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET data=excluded.data, "
            "updated_at=excluded.updated_at",
            (message.id, self.conversation_id,
             json.dumps(message.to_dict()), time.time()),
        )
        self._conn.commit()

    def load_offline_queue(self) -> list[str]:
        rows = self._conn.execute(
            "SELECT message_id FROM offline_queue WHERE conversation_id = ? "
            "ORDER BY seq",
            (self.conversation_id,),
        ).fetchall()
        return [r[0] for r in rows]

    def save_offline_queue(self, message_ids: list[str]) -> None:
        with self._conn:
            self._conn.execute(
                "DELETE FROM offline_queue WHERE conversation_id = ?",
                (self.conversation_id,),
            )
            self._conn.executemany(
                "INSERT INTO offline_queue (conversation_id, seq, message_id) "
                "VALUES (?, ?, ?)",
                [(self.conversation_id, i, mid) for i, mid in enumerate(message_ids)],
            )

    def clear(self) -> None:
        with self._conn:
            self._conn.execute(
                "DELETE FROM messages WHERE conversation_id = ?",
                (self.conversation_id,),
            )
            self._conn.execute(
                "DELETE FROM offline_queue WHERE conversation_id = ?",
                (self.conversation_id,),
            )

    def close(self) -> None:
        self._conn.close()
