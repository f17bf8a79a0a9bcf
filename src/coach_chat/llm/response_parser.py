"""Parsing of OpenAI-compatible streaming and non-streaming responses."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from coach_chat.errors import ServerError
from coach_chat.types import (
    Completed,
    CompletionResult,
    ContentDelta,
    Failed,
    ReasoningDelta,
    StreamEvent,
)

_logger = logging.getLogger(__name__)

_THINK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL)


# ---------------------------------------------------------------------------
# Thinking extraction
# ---------------------------------------------------------------------------

def _extract_thinking(text: str) -> tuple[str, str]:
    """Extract ``<think>...</think>`` blocks from response text.

    Returns (thinking_text, cleaned_text).
    """
    thinking_parts = _THINK_RE.findall(text)
    thinking = "\n".join(thinking_parts).strip()
    cleaned = _THINK_RE.sub("", text).strip()
    return thinking, cleaned


def _reasoning_field(obj: dict[str, Any]) -> str:
    # OpenRouter uses "reasoning", DeepSeek-style APIs "reasoning_content"
    return obj.get("reasoning") or obj.get("reasoning_content") or ""


def _error_from_payload(data: dict[str, Any]) -> ServerError:
    err = data.get("error") or {}
    if isinstance(err, dict):
        message = err.get("message", "unknown provider error")
        code = err.get("code", 500)
    else:
        message, code = str(err), 500
    status = code if isinstance(code, int) and code >= 400 else 500
    return ServerError(f"Provider error: {message}", status_code=status)


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class SSEParser:
    """Turn ``data: {...}`` lines into StreamEvents.

    Usage::

        parser = SSEParser()
        for line in lines:
            for event in parser.feed(line):
                ...
            if parser.done:
                break
        final = parser.completed()
    """

    def __init__(self) -> None:
        self.done = False
        self.model = ""
        self.finish_reason = ""
        self.usage: dict[str, int] = {}

    def feed(self, line: str) -> list[StreamEvent]:
        line = line.strip()
        if not line.startswith("data:"):
            # Comments (": OPENROUTER PROCESSING"), event names, blank lines
            return []
        data_str = line[5:].strip()
        if data_str == "[DONE]":
            self.done = True
            return []

        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            _logger.debug("Skipping unparsable stream chunk: %.200s", data_str)
            return []

        if data.get("error"):
            return [Failed(_error_from_payload(data))]

        self.model = data.get("model", self.model)
        if data.get("usage"):
            self.usage = data["usage"]

        choices = data.get("choices") or []
        if not choices:
            return []
        choice = choices[0]
        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]

        delta = choice.get("delta") or {}
        events: list[StreamEvent] = []
        reasoning = _reasoning_field(delta)
        if reasoning:
            events.append(ReasoningDelta(reasoning))
        content = delta.get("content")
        if content:
            events.append(ContentDelta(content))
        return events

    def completed(self) -> Completed:
        return Completed(
            model=self.model,
            finish_reason=self.finish_reason,
            usage=dict(self.usage),
        )


# ---------------------------------------------------------------------------
# Non-streaming
# ---------------------------------------------------------------------------

def parse_completion(data: dict[str, Any]) -> CompletionResult:
    """Build a CompletionResult from a ``/chat/completions`` JSON body.

    Falls back to ``<think>`` tags when the provider returns no reasoning field.
    """
    if data.get("error"):
        raise _error_from_payload(data)
    choices = data.get("choices") or []
    if not choices:
        raise ServerError("Empty choices in completion response", status_code=502)

    message = choices[0].get("message") or {}
    content = message.get("content") or ""
    reasoning = _reasoning_field(message)
    if not reasoning:
        reasoning, content = _extract_thinking(content)

    return CompletionResult(
        content=content,
        reasoning=reasoning or None,
        model=data.get("model", ""),
        usage=data.get("usage") or {},
    )
