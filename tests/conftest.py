"""Shared fakes for coach-chat tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from coach_chat.core.history import ConversationHistory
from coach_chat.events.bus import EventBus
from coach_chat.tools.registry import ToolRegistry
from coach_chat.types import (
    ChatRequest,
    CompletionResult,
    Message,
    SendState,
    SendStatus,
)


class FakeTransport:
    """Scripted model endpoint.

    Each ``stream()`` call consumes the next entry of *streams*: either an
    exception (raised before the first event) or a list of items.  Items are
    yielded in order, except exceptions, which are raised mid-stream, and
    ``asyncio.Event`` objects, which block the stream until set.  ``waiting``
    is set whenever the stream is blocked on such a gate.
    Each ``complete()`` call consumes the next entry of *completions*.
    """

    def __init__(
        self,
        streams: list[Any] | None = None,
        completions: list[Any] | None = None,
    ) -> None:
        self.streams = list(streams or [])
        self.completions = list(completions or [])
        self.requests: list[ChatRequest] = []
        self.complete_requests: list[ChatRequest] = []
        self.waiting = asyncio.Event()

    async def stream(self, request: ChatRequest):
        self.requests.append(request)
        script = self.streams.pop(0)
        if isinstance(script, Exception):
            raise script
        for item in script:
            if isinstance(item, Exception):
                raise item
            if isinstance(item, asyncio.Event):
                self.waiting.set()
                await item.wait()
                continue
            yield item

    async def complete(self, request: ChatRequest) -> CompletionResult:
        self.complete_requests.append(request)
        item = self.completions.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def fake_transport():
    """Factory: ``fake_transport(streams, completions)``."""
    return FakeTransport


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def history() -> ConversationHistory:
    # In flight, as the retry coordinator leaves it while a turn runs
    h = ConversationHistory()
    h.append(Message.user("I just did bench press, 8 reps at 80kg").with_send_status(
        SendStatus(state=SendState.SENDING),
    ))
    return h


@pytest.fixture
def logged_sets() -> list[dict[str, str]]:
    return []


@pytest.fixture
def registry(logged_sets) -> ToolRegistry:
    reg = ToolRegistry()

    def log_set(params: dict[str, str]) -> str:
        logged_sets.append(params)
        return f"Logged {params['exercise']}: {params.get('reps', '?')} reps"

    reg.register_handler(
        "log_set", log_set,
        required=["exercise"], optional=["reps", "weight"],
        description="Record a completed set",
    )
    return reg
