"""Tests for ConversationHistory, crash recovery and the stores."""

import pytest

from coach_chat.core.history import (
    TRUNCATION_MARKER,
    ConversationHistory,
    is_api_visible,
)
from coach_chat.storage.store import InMemoryConversationStore, SqliteConversationStore
from coach_chat.types import (
    Attachment,
    FailureReason,
    Message,
    MessageRole,
    MessageState,
    SendState,
    SendStatus,
)


def _user(content: str, state: SendState) -> Message:
    return Message.user(content).with_send_status(SendStatus(state=state))


def _assistant(content: str, state: MessageState = MessageState.COMPLETED) -> Message:
    return Message(role=MessageRole.ASSISTANT, content=content, state=state)


class TestApiView:
    def test_user_states(self):
        assert is_api_visible(_user("a", SendState.SENDING))
        assert is_api_visible(_user("a", SendState.RETRYING))
        assert is_api_visible(_user("a", SendState.SENT))
        assert not is_api_visible(_user("a", SendState.QUEUED))
        assert not is_api_visible(_user("a", SendState.FAILED))
        assert not is_api_visible(_user("a", SendState.NOT_SENT))

    def test_streaming_never_visible(self):
        assert not is_api_visible(_assistant("partial", MessageState.STREAMING))

    def test_failed_and_blank_hidden(self):
        assert not is_api_visible(_assistant("x", MessageState.FAILED))
        assert not is_api_visible(_assistant("   "))

    def test_attachment_only_user_message_visible(self):
        m = Message.user("", [Attachment(data=b"img")]).with_send_status(
            SendStatus(state=SendState.SENT),
        )
        assert is_api_visible(m)

    def test_api_messages_keep_order(self):
        h = ConversationHistory()
        h.append(_user("q1", SendState.SENT))
        h.append(_assistant("a1"))
        h.append(_user("queued", SendState.QUEUED))
        h.append(Message.system("Tool 'log_set' executed successfully:\nok"))
        h.append(_assistant("", MessageState.STREAMING))
        assert [m["content"] for m in h.api_messages()] == [
            "q1", "a1", "Tool 'log_set' executed successfully:\nok",
        ]


class TestMutation:
    def test_append_returns_index(self):
        h = ConversationHistory()
        assert h.append(Message.system("a")) == 0
        assert h.append(Message.system("b")) == 1
        assert len(h) == 2

    def test_duplicate_id_rejected(self):
        h = ConversationHistory()
        m = Message.system("a")
        h.append(m)
        with pytest.raises(ValueError):
            h.append(m)

    def test_single_streaming_message(self):
        h = ConversationHistory()
        h.append(_assistant("", MessageState.STREAMING))
        with pytest.raises(ValueError):
            h.append(_assistant("", MessageState.STREAMING))

    def test_update_in_place(self):
        h = ConversationHistory()
        m = _assistant("", MessageState.STREAMING)
        h.append(m)
        h.append(Message.system("later"))
        h.update(m.updated(content="done", state=MessageState.COMPLETED))
        assert h[0].content == "done"
        assert h.index_of(m.id) == 0
        assert h.streaming_message() is None

    def test_update_unknown_raises(self):
        with pytest.raises(KeyError):
            ConversationHistory().update(Message.system("x"))

    def test_every_change_persisted(self):
        store = InMemoryConversationStore()
        h = ConversationHistory(store)
        m = _user("hi", SendState.NOT_SENT)
        h.append(m)
        h.update(m.with_send_status(SendStatus(state=SendState.SENDING)))
        assert store.write_count == 2
        assert store.load_history()[0].send_status.state == SendState.SENDING

    def test_store_failure_does_not_raise(self):
        class BrokenStore(InMemoryConversationStore):
            def append_or_update(self, message):
                raise OSError("disk full")

        h = ConversationHistory(BrokenStore())
        h.append(Message.system("still here"))
        assert len(h) == 1


class TestCrashRecovery:
    def test_streaming_with_content_is_truncated(self):
        store = InMemoryConversationStore()
        store.append_or_update(_assistant("Half an ans", MessageState.STREAMING))
        h = ConversationHistory.load(store)
        m = h[0]
        assert m.state == MessageState.COMPLETED
        assert m.content == "Half an ans" + TRUNCATION_MARKER
        assert store.load_history()[0] == m

    def test_empty_streaming_fails(self):
        store = InMemoryConversationStore()
        store.append_or_update(_assistant("", MessageState.STREAMING))
        assert ConversationHistory.load(store)[0].state == MessageState.FAILED

    def test_in_flight_send_fails_with_retry(self):
        store = InMemoryConversationStore()
        store.append_or_update(_user("hi", SendState.RETRYING))
        status = ConversationHistory.load(store)[0].send_status
        assert status.state == SendState.FAILED
        assert status.reason == FailureReason.UNKNOWN
        assert status.can_retry

    def test_settled_messages_untouched(self):
        store = InMemoryConversationStore()
        queued = _user("later", SendState.QUEUED)
        store.append_or_update(queued)
        store.append_or_update(_assistant("fine"))
        writes = store.write_count
        h = ConversationHistory.load(store)
        assert h[0] == queued
        assert store.write_count == writes


# ---------------------------------------------------------------------------
# SQLite store
# ---------------------------------------------------------------------------

@pytest.fixture
def sqlite_store(tmp_path):
    store = SqliteConversationStore(str(tmp_path / "chat.db"))
    yield store
    store.close()


class TestSqliteStore:
    def test_order_and_upsert(self, sqlite_store):
        a = Message.system("a")
        b = _user("b", SendState.NOT_SENT)
        sqlite_store.append_or_update(a)
        sqlite_store.append_or_update(b)
        sqlite_store.append_or_update(a.updated(content="a2"))
        loaded = sqlite_store.load_history()
        assert [m.content for m in loaded] == ["a2", "b"]
        assert loaded[1] == b

    def test_reopen(self, tmp_path):
        path = str(tmp_path / "chat.db")
        first = SqliteConversationStore(path)
        first.append_or_update(Message.system("kept"))
        first.save_offline_queue(["m1", "m2"])
        first.close()

        second = SqliteConversationStore(path)
        assert [m.content for m in second.load_history()] == ["kept"]
        assert second.load_offline_queue() == ["m1", "m2"]
        second.close()

    def test_conversations_isolated(self, tmp_path):
        path = str(tmp_path / "chat.db")
        one = SqliteConversationStore(path, conversation_id="one")
        two = SqliteConversationStore(path, conversation_id="two")
        one.append_or_update(Message.system("only in one"))
        assert two.load_history() == []
        one.close()
        two.close()

    def test_queue_replaced(self, sqlite_store):
        sqlite_store.save_offline_queue(["a", "b"])
        sqlite_store.save_offline_queue(["b"])
        assert sqlite_store.load_offline_queue() == ["b"]

    def test_clear(self, sqlite_store):
        sqlite_store.append_or_update(Message.system("x"))
        sqlite_store.save_offline_queue(["x"])
        sqlite_store.clear()
        assert sqlite_store.load_history() == []
        assert sqlite_store.load_offline_queue() == []

    def test_memory_database(self):
        store = SqliteConversationStore(":memory:")
        store.append_or_update(Message.system("x"))
        assert len(store.load_history()) == 1
        store.close()
