"""The single ordered conversation log and its API view."""

from __future__ import annotations

import logging
from typing import Any, Iterator

from coach_chat.storage.store import ConversationStore
from coach_chat.types import (
    FailureReason,
    Message,
    MessageRole,
    MessageState,
    SendState,
)

_logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[response interrupted]"

_API_SEND_STATES = frozenset({SendState.SENDING, SendState.RETRYING, SendState.SENT})


def is_api_visible(message: Message) -> bool:
    """Whether *message* belongs in the context sent to the model.

    Only finalized messages with something to say qualify; user messages
    also need to be in flight or delivered, so queued and failed sends
    never leak into another turn's context.
    """
    if message.state != MessageState.COMPLETED:
        return False
    if not message.content.strip() and not message.attachments:
        return False
    if message.role == MessageRole.USER:
        status = message.send_status
        return status is None or status.state in _API_SEND_STATES
    return True


class ConversationHistory:
    """Ordered message log, append-only apart from in-place updates by id.

    Every change is handed to the store immediately.
    """

    def __init__(self, store: ConversationStore | None = None) -> None:
        self._store = store
        self._messages: list[Message] = []
        self._index: dict[str, int] = {}

    @classmethod
    def load(cls, store: ConversationStore) -> ConversationHistory:
        """Load from *store*, repairing messages a crash left in flight."""
        history = cls(store)
        for message in store.load_history():
            repaired = _recover(message)
            history._insert(repaired)
            if repaired is not message:
                _logger.info("Recovered in-flight message %s", message.id)
                history._persist(repaired)
        return history

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, message: Message) -> int:
        """Append *message* and return its index."""
        if message.id in self._index:
            raise ValueError(f"Message already in history: {message.id}")
        if message.state == MessageState.STREAMING and self.streaming_message():
            raise ValueError("Another message is already streaming")
        index = self._insert(message)
        self._persist(message)
        return index

    def update(self, message: Message) -> None:
        """Replace the stored message with the same id."""
        index = self._index.get(message.id)
        if index is None:
            raise KeyError(message.id)
        self._messages[index] = message
        self._persist(message)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, message_id: str) -> Message | None:
        index = self._index.get(message_id)
        return self._messages[index] if index is not None else None

    def index_of(self, message_id: str) -> int | None:
        return self._index.get(message_id)

    def streaming_message(self) -> Message | None:
        for message in reversed(self._messages):
            if message.state == MessageState.STREAMING:
                return message
        return None

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def api_view(self) -> list[Message]:
        return [m for m in self._messages if is_api_visible(m)]

    def api_messages(self) -> list[dict[str, Any]]:
        return [m.to_api_dict() for m in self.api_view()]

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _insert(self, message: Message) -> int:
        self._messages.append(message)
        index = len(self._messages) - 1
        self._index[message.id] = index
        return index

    def _persist(self, message: Message) -> None:
        if self._store is None:
            return
        try:
            self._store.append_or_update(message)
        except Exception:
            _logger.exception("Failed to persist message %s", message.id)


def _recover(message: Message) -> Message:
    if message.state == MessageState.STREAMING:
        if message.content:
            return message.updated(
                content=message.content + TRUNCATION_MARKER,
                state=MessageState.COMPLETED,
            )
        return message.updated(state=MessageState.FAILED)

    status = message.send_status
    if status is not None and status.is_active:
        return message.with_send_status(status.transition(
            SendState.FAILED, reason=FailureReason.UNKNOWN, can_retry=True,
        ))
    return message
