"""Turn-scoped fold of streamed deltas into content and reasoning."""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class FinalizedResponse:
    content: str
    reasoning: str | None
    is_empty: bool


@dataclass(frozen=True)
class ResponseAccumulator:
    """Immutable accumulator; every operation returns a new instance.

    ``message_index`` is the history position of the bound assistant
    message, ``None`` until the first content or reasoning byte arrives.
    """

    content: str = ""
    reasoning: str | None = None
    message_index: int | None = None
    is_complete: bool = False

    @property
    def has_content(self) -> bool:
        return bool(self.content)

    @property
    def has_reasoning(self) -> bool:
        return bool(self.reasoning)

    @property
    def is_bound(self) -> bool:
        return self.message_index is not None

    def append_content(self, delta: str) -> ResponseAccumulator:
        return replace(self, content=self.content + delta)

    def append_reasoning(self, delta: str) -> ResponseAccumulator:
        return replace(self, reasoning=(self.reasoning or "") + delta)

    def bind(self, index: int) -> ResponseAccumulator:
        return replace(self, message_index=index)

    def mark_complete(self) -> ResponseAccumulator:
        return replace(self, is_complete=True)

    def with_fallback(
        self, content: str, reasoning: str | None,
    ) -> ResponseAccumulator:
        """Replace content with a non-streaming result.

        Reasoning streamed before the failure survives unless the fallback
        brings its own.
        """
        return replace(
            self,
            content=content,
            reasoning=reasoning or self.reasoning,
            is_complete=True,
        )

    def finalize(self) -> FinalizedResponse:
        reasoning = self.reasoning or None
        return FinalizedResponse(
            content=self.content,
            reasoning=reasoning,
            is_empty=not self.content.strip() and reasoning is None,
        )
