"""Exception hierarchy for the chat engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from coach_chat.types import Message


class ChatError(Exception):
    """Base class for engine errors."""


class TransportError(ChatError):
    """Network-level failure: timeout, connection reset, DNS."""

    def __init__(self, message: str, timeout: bool = False) -> None:
        super().__init__(message)
        self.timeout = timeout


class ServerError(ChatError):
    """HTTP 5xx or 429 from the model endpoint."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ClientError(ChatError):
    """HTTP 4xx other than 429, or a request the endpoint cannot accept."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        authentication: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.authentication = authentication


class ProtocolError(ChatError):
    """The tool-call loop could not reach a final answer.

    ``message`` is the assistant message that was finalized with a note.
    """

    def __init__(self, reason: str, message: Message | None = None) -> None:
        super().__init__(reason)
        self.message = message


class TurnCancelled(ChatError):
    """A turn was cancelled; ``message`` is what was kept, if anything."""

    def __init__(self, message: Message | None = None) -> None:
        super().__init__("turn cancelled")
        self.message = message


class InvalidTransitionError(ChatError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid send status transition: {current} -> {target}")
        self.current = current
        self.target = target
