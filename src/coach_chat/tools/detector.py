"""Detection of ``[TOOL_CALL: name(key: "value", ...)]`` markers in model text.

Markers may appear anywhere in a reply, so detection always runs on the
fully accumulated text of a turn, never on individual deltas.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from coach_chat.types import ToolCall

_logger = logging.getLogger(__name__)

MARKER = "[TOOL_CALL:"

_NAME_RE = re.compile(r"\s*(\w+)")
_KEY_RE = re.compile(r"(\w+)\s*:")
_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}


class _MarkerError(ValueError):
    pass


@dataclass(frozen=True)
class MalformedCall:
    """A ``[TOOL_CALL:`` opening that could not be parsed."""

    raw: str
    span: tuple[int, int]
    reason: str


@dataclass(frozen=True)
class Detection:
    calls: list[ToolCall] = field(default_factory=list)
    malformed: list[MalformedCall] = field(default_factory=list)
    cleaned_text: str = ""

    @property
    def has_markers(self) -> bool:
        return bool(self.calls or self.malformed)


# ---------------------------------------------------------------------------
# Scanning helpers
# ---------------------------------------------------------------------------

def _skip_ws(text: str, i: int) -> int:
    while i < len(text) and text[i].isspace():
        i += 1
    return i


def _read_quoted(text: str, i: int) -> tuple[str, int]:
    """Read a quoted value starting just after the opening quote."""
    out: list[str] = []
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        if ch == '"':
            return "".join(out), i + 1
        out.append(ch)
        i += 1
    raise _MarkerError("unterminated quoted value")


def _read_bare(text: str, i: int, key: str) -> tuple[str, int]:
    start = i
    while i < len(text) and text[i] not in ",)":
        i += 1
    if i >= len(text):
        raise _MarkerError("unterminated parameter list")
    value = text[start:i].strip()
    if not value:
        raise _MarkerError(f"missing value for parameter '{key}'")
    return value, i


def _parse_params(text: str, i: int) -> tuple[dict[str, str], int]:
    """Parse ``key: "value", ...`` up to the closing parenthesis."""
    params: dict[str, str] = {}
    while True:
        i = _skip_ws(text, i)
        if i >= len(text):
            raise _MarkerError("unterminated parameter list")
        if text[i] == ")":
            return params, i + 1

        m = _KEY_RE.match(text, i)
        if not m:
            snippet = text[i:i + 20]
            raise _MarkerError(f"expected 'key: \"value\"' near '{snippet}'")
        key = m.group(1)
        i = _skip_ws(text, m.end())

        if i < len(text) and text[i] == '"':
            value, i = _read_quoted(text, i + 1)
        else:
            value, i = _read_bare(text, i, key)
        params[key] = value

        i = _skip_ws(text, i)
        if i < len(text) and text[i] == ",":
            i += 1
        elif i < len(text) and text[i] == ")":
            return params, i + 1
        else:
            raise _MarkerError(f"expected ',' or ')' after parameter '{key}'")


def _parse_marker(text: str, start: int) -> tuple[ToolCall, int]:
    i = start + len(MARKER)
    m = _NAME_RE.match(text, i)
    if not m:
        raise _MarkerError("missing tool name")
    name = m.group(1)
    params: dict[str, str] = {}

    j = _skip_ws(text, m.end())
    if j < len(text) and text[j] == "(":
        params, j = _parse_params(text, j + 1)
        j = _skip_ws(text, j)
    if j >= len(text) or text[j] != "]":
        raise _MarkerError(f"expected ']' to close call to '{name}'")

    end = j + 1
    return ToolCall(name=name, params=params, raw=text[start:end], span=(start, end)), end


def _recover_end(text: str, start: int) -> int:
    """End of an unparsable marker: the next ']' or the next marker."""
    search_from = start + len(MARKER)
    next_marker = text.find(MARKER, search_from)
    close = text.find("]", search_from)
    if close >= 0 and (next_marker < 0 or close < next_marker):
        return close + 1
    if next_marker >= 0:
        return next_marker
    return len(text)


def _strip_spans(text: str, spans: list[tuple[int, int]]) -> str:
    # Remove from the end so earlier offsets stay valid
    for start, end in reversed(spans):
        text = text[:start] + text[end:]
    text = re.sub(r"[ \t]{2,}", " ", text)
    return text.strip()


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------

class ToolCallDetector:
    """Find tool-call markers, parse them and produce the user-visible text."""

    def detect(self, text: str) -> Detection:
        """Parse every marker in *text*, left to right.

        Text without any marker is returned unchanged with no calls.
        """
        if MARKER not in text:
            return Detection(cleaned_text=text)

        calls: list[ToolCall] = []
        malformed: list[MalformedCall] = []
        spans: list[tuple[int, int]] = []
        pos = 0
        while True:
            start = text.find(MARKER, pos)
            if start < 0:
                break
            try:
                call, end = _parse_marker(text, start)
            except _MarkerError as e:
                end = _recover_end(text, start)
                malformed.append(MalformedCall(
                    raw=text[start:end], span=(start, end), reason=str(e),
                ))
                _logger.debug("Malformed tool call at %d: %s", start, e)
            else:
                calls.append(call)
            spans.append((start, end))
            pos = end

        return Detection(
            calls=calls,
            malformed=malformed,
            cleaned_text=_strip_spans(text, spans),
        )

    @staticmethod
    def visible_prefix(text: str) -> str:
        """Text safe to show while streaming.

        Everything from the first marker on is hidden, as is a trailing
        fragment that could still grow into a marker.
        """
        idx = text.find(MARKER)
        if idx >= 0:
            return text[:idx]
        for k in range(min(len(MARKER) - 1, len(text)), 0, -1):
            if text.endswith(MARKER[:k]):
                return text[:-k]
        return text
