"""Persistence backends."""

from coach_chat.storage.store import (
    ConversationStore,
    InMemoryConversationStore,
    SqliteConversationStore,
)

__all__ = [
    "ConversationStore",
    "InMemoryConversationStore",
    "SqliteConversationStore",
]
