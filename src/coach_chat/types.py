"""Shared data types for the coaching chat engine."""

from __future__ import annotations

import base64
import enum
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Union

from coach_chat.errors import InvalidTransitionError


# ---------------------------------------------------------------------------
# Send status
# ---------------------------------------------------------------------------

class FailureReason(enum.Enum):
    """Why a user message could not be delivered."""

    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    CLIENT_ERROR = "client_error"
    UNKNOWN = "unknown"

    @property
    def user_message(self) -> str:
        return _FAILURE_MESSAGES[self]


_FAILURE_MESSAGES: dict[FailureReason, str] = {
    FailureReason.NETWORK_ERROR: "Network connection lost",
    FailureReason.TIMEOUT: "Request timed out",
    FailureReason.SERVER_ERROR: "Server error, will retry",
    FailureReason.RATE_LIMIT: "Rate limit exceeded, will retry",
    FailureReason.AUTHENTICATION: "Authentication failed",
    FailureReason.CLIENT_ERROR: "Request was rejected",
    FailureReason.UNKNOWN: "Unknown error occurred",
}


class SendState(enum.Enum):
    NOT_SENT = "not_sent"
    SENDING = "sending"
    SENT = "sent"
    RETRYING = "retrying"
    OFFLINE = "offline"
    QUEUED = "queued"
    FAILED = "failed"


# SENT is terminal. FAILED is left only by a manual retry, which goes to
# SENDING, or to OFFLINE when there is no network.
_TRANSITIONS: dict[SendState, frozenset[SendState]] = {
    SendState.NOT_SENT: frozenset({SendState.SENDING, SendState.OFFLINE}),
    SendState.SENDING: frozenset({
        SendState.SENT, SendState.RETRYING, SendState.FAILED, SendState.OFFLINE,
    }),
    SendState.RETRYING: frozenset({
        SendState.SENDING, SendState.FAILED, SendState.OFFLINE,
    }),
    SendState.OFFLINE: frozenset({SendState.QUEUED, SendState.SENDING}),
    SendState.QUEUED: frozenset({SendState.SENDING}),
    SendState.FAILED: frozenset({SendState.SENDING, SendState.OFFLINE}),
    SendState.SENT: frozenset(),
}

_ICONS: dict[SendState, str] = {
    SendState.NOT_SENT: "…",
    SendState.SENDING: "↑",
    SendState.SENT: "✓",
    SendState.RETRYING: "↻",
    SendState.OFFLINE: "⨯",
    SendState.QUEUED: "⏸",
    SendState.FAILED: "!",
}


@dataclass(frozen=True)
class SendStatus:
    """Delivery status of a user-originated message.

    ``attempt``/``max_attempts`` are meaningful for RETRYING, ``reason`` and
    ``can_retry`` for FAILED.
    """

    state: SendState = SendState.NOT_SENT
    attempt: int = 0
    max_attempts: int = 0
    reason: FailureReason | None = None
    can_retry: bool = False

    def can_transition_to(self, state: SendState) -> bool:
        return state in _TRANSITIONS[self.state]

    def transition(
        self,
        state: SendState,
        *,
        attempt: int = 0,
        max_attempts: int = 0,
        reason: FailureReason | None = None,
        can_retry: bool = False,
    ) -> SendStatus:
        """Return the status after moving to *state*.

        Raises InvalidTransitionError when the move is not allowed.
        """
        if not self.can_transition_to(state):
            raise InvalidTransitionError(self.state.value, state.value)
        return SendStatus(
            state=state,
            attempt=attempt,
            max_attempts=max_attempts,
            reason=reason,
            can_retry=can_retry,
        )

    @property
    def is_active(self) -> bool:
        return self.state in (SendState.SENDING, SendState.RETRYING)

    @property
    def is_pending_network(self) -> bool:
        return self.state in (SendState.OFFLINE, SendState.QUEUED)

    @property
    def status_description(self) -> str:
        if self.state == SendState.RETRYING:
            return f"Retrying ({self.attempt}/{self.max_attempts})"
        if self.state == SendState.FAILED:
            reason = self.reason or FailureReason.UNKNOWN
            if self.can_retry:
                return f"{reason.user_message} (retry available)"
            return reason.user_message
        return {
            SendState.NOT_SENT: "Pending",
            SendState.SENDING: "Sending...",
            SendState.SENT: "Sent",
            SendState.OFFLINE: "Waiting for network",
            SendState.QUEUED: "Queued, will send when online",
        }[self.state]

    @property
    def icon(self) -> str:
        return _ICONS[self.state]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"state": self.state.value}
        if self.state == SendState.RETRYING:
            data["attempt"] = self.attempt
            data["max_attempts"] = self.max_attempts
        if self.state == SendState.FAILED:
            data["reason"] = (self.reason or FailureReason.UNKNOWN).value
            data["can_retry"] = self.can_retry
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SendStatus:
        try:
            state = SendState(data.get("state", "not_sent"))
        except ValueError:
            state = SendState.NOT_SENT
        reason = data.get("reason")
        return cls(
            state=state,
            attempt=int(data.get("attempt", 0)),
            max_attempts=int(data.get("max_attempts", 0)),
            reason=FailureReason(reason) if reason else None,
            can_retry=bool(data.get("can_retry", False)),
        )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class MessageRole(enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageState(enum.Enum):
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Attachment:
    """Binary attachment sent alongside a user message."""

    data: bytes
    mime_type: str = "image/jpeg"
    kind: str = "image"

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "mime_type": self.mime_type,
            "data": base64.b64encode(self.data).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        return cls(
            data=base64.b64decode(data.get("data", "")),
            mime_type=data.get("mime_type", "image/jpeg"),
            kind=data.get("kind", "image"),
        )


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Message:
    """One conversational turn.

    Instances are immutable; state changes produce a new Message with the
    same ``id`` that replaces the old one in the history.
    """

    role: MessageRole
    content: str = ""
    reasoning: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=time.time)
    state: MessageState = MessageState.COMPLETED
    send_status: SendStatus | None = None
    retry_count: int = 0
    attachments: tuple[Attachment, ...] = ()

    @classmethod
    def user(
        cls,
        content: str,
        attachments: tuple[Attachment, ...] | list[Attachment] = (),
    ) -> Message:
        return cls(
            role=MessageRole.USER,
            content=content,
            send_status=SendStatus(),
            attachments=tuple(attachments),
        )

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=MessageRole.SYSTEM, content=content)

    @property
    def is_user(self) -> bool:
        return self.role == MessageRole.USER

    def updated(self, **changes: Any) -> Message:
        """Copy with *changes* applied; ``reasoning=None`` keeps the existing value."""
        if "reasoning" in changes and changes["reasoning"] is None:
            changes.pop("reasoning")
        return replace(self, **changes)

    def with_send_status(self, status: SendStatus) -> Message:
        return replace(self, send_status=status)

    def to_api_dict(self) -> dict[str, Any]:
        """Serialize for an OpenAI-compatible ``messages`` array."""
        if not self.attachments:
            return {"role": self.role.value, "content": self.content}
        parts: list[dict[str, Any]] = []
        if self.content:
            parts.append({"type": "text", "text": self.content})
        for att in self.attachments:
            parts.append({
                "type": "image_url",
                "image_url": {"url": att.to_data_url()},
            })
        return {"role": self.role.value, "content": parts}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "reasoning": self.reasoning,
            "created_at": self.created_at,
            "state": self.state.value,
            "send_status": self.send_status.to_dict() if self.send_status else None,
            "retry_count": self.retry_count,
            "attachments": [a.to_dict() for a in self.attachments],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        status = data.get("send_status")
        return cls(
            id=data["id"],
            role=MessageRole(data.get("role", "user")),
            content=data.get("content", ""),
            reasoning=data.get("reasoning"),
            created_at=data.get("created_at", time.time()),
            state=MessageState(data.get("state", "completed")),
            send_status=SendStatus.from_dict(status) if status else None,
            retry_count=data.get("retry_count", 0),
            attachments=tuple(
                Attachment.from_dict(a) for a in data.get("attachments", [])
            ),
        )


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    description: str = ""
    required: bool = True


@dataclass(frozen=True)
class ToolCall:
    """Tool invocation parsed from model text."""

    name: str
    params: dict[str, str] = field(default_factory=dict)
    raw: str = ""
    span: tuple[int, int] = (0, 0)


@dataclass(frozen=True)
class ToolCallResult:
    """Outcome of one tool call, fed back to the model."""

    tool_name: str
    result: str
    success: bool

    @classmethod
    def ok(cls, tool_name: str, result: str) -> ToolCallResult:
        return cls(tool_name=tool_name, result=result, success=True)

    @classmethod
    def error(cls, tool_name: str, result: str) -> ToolCallResult:
        return cls(tool_name=tool_name, result=result, success=False)


# ---------------------------------------------------------------------------
# Transport types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChatRequest:
    """Payload for one model call."""

    model: str
    system_prompt: str
    history: list[dict[str, Any]]
    stream: bool = True


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class Completed:
    model: str = ""
    finish_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class Failed:
    error: Exception


StreamEvent = Union[ContentDelta, ReasoningDelta, Completed, Failed]


@dataclass(frozen=True)
class CompletionResult:
    """Result of a non-streaming call."""

    content: str
    reasoning: str | None = None
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Event types emitted by the chat engine."""

    # Turn lifecycle
    TURN_STARTED = "turn.started"
    TURN_COMPLETED = "turn.completed"
    TURN_FAILED = "turn.failed"
    TURN_CANCELLED = "turn.cancelled"

    # Message events
    MESSAGE_CREATED = "message.created"
    MESSAGE_UPDATED = "message.updated"

    # Transport events
    STREAM_FALLBACK = "stream.fallback"

    # Tool events
    TOOL_EXECUTING = "tool.executing"
    TOOL_EXECUTED = "tool.executed"
    TOOL_ERROR = "tool.error"

    # Delivery events
    SEND_STATUS_CHANGED = "send.status_changed"
    CONNECTIVITY_CHANGED = "connectivity.changed"


@dataclass
class ChatEvent:
    """Event emitted by the engine via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
