"""Tool abstractions for model-invoked actions."""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable

from coach_chat.types import ToolCallResult, ToolParameter

Handler = Callable[[dict[str, str]], Any]


class Tool(ABC):
    """Base class for all tools.

    Subclasses set ``name``, ``description`` and ``parameters`` as class
    attributes and implement the async ``execute()`` method.  Parameter
    values always arrive as strings; converting them is the tool's job.
    """

    name: str
    description: str = ""
    parameters: list[ToolParameter]
    max_output: int = 5000  # Per-tool output limit (chars)

    @abstractmethod
    async def execute(self, params: dict[str, str]) -> ToolCallResult:
        """Run the tool once."""

    @property
    def required_params(self) -> list[str]:
        return [p.name for p in self.parameters if p.required]

    def to_prompt_description(self) -> str:
        """One-line usage hint in marker syntax, for system prompts."""
        args = ", ".join(f'{p.name}: "..."' for p in self.parameters)
        call = f"[TOOL_CALL: {self.name}({args})]" if args else f"[TOOL_CALL: {self.name}]"
        if self.description:
            return f"{call} - {self.description}"
        return call


class FunctionTool(Tool):
    """Adapt a plain sync or async handler to the Tool interface.

    The handler may return a ToolCallResult or a string (taken as success).
    """

    def __init__(
        self,
        name: str,
        handler: Handler,
        parameters: list[ToolParameter] | None = None,
        description: str = "",
    ) -> None:
        self.name = name
        self.description = description
        self.parameters = list(parameters or [])
        self._handler = handler

    async def execute(self, params: dict[str, str]) -> ToolCallResult:
        result = self._handler(params)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, ToolCallResult):
            return result
        return ToolCallResult.ok(self.name, str(result))
