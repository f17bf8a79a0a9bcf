"""Registry of tools keyed by exact name.

Execution fails closed: unknown tools, missing parameters and handler
exceptions all come back as unsuccessful ToolCallResults, because that text
is the model's only feedback for correcting itself.
"""

from __future__ import annotations

import logging

from coach_chat.tools.base import FunctionTool, Handler, Tool
from coach_chat.types import ToolCallResult, ToolParameter

_logger = logging.getLogger(__name__)


def _smart_truncate(text: str, max_length: int) -> str:
    """Keep head and tail with a note about what was cut."""
    if len(text) <= max_length:
        return text
    head_size = max_length // 4
    tail_size = max_length - head_size
    omitted = len(text) - max_length
    return (
        text[:head_size]
        + f"\n\n... [{omitted} chars truncated] ...\n\n"
        + text[-tail_size:]
    )


class ToolRegistry:
    """Registry of available tools with fail-closed async execution."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def register_handler(
        self,
        name: str,
        handler: Handler,
        required: list[str] | tuple[str, ...] = (),
        optional: list[str] | tuple[str, ...] = (),
        description: str = "",
    ) -> Tool:
        """Register a plain callable ``(params) -> ToolCallResult | str``."""
        params = [ToolParameter(name=p) for p in required]
        params += [ToolParameter(name=p, required=False) for p in optional]
        tool = FunctionTool(name, handler, params, description)
        self.register(tool)
        return tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, tool_name: str, params: dict[str, str]) -> ToolCallResult:
        """Execute a tool by exact name.  Never raises for tool failures."""
        tool = self._tools.get(tool_name)
        if tool is None:
            available = ", ".join(sorted(self._tools)) or "none"
            return ToolCallResult.error(
                tool_name,
                f"Unknown tool '{tool_name}'. Available tools: {available}",
            )

        missing = [p for p in tool.required_params if p not in params]
        if missing:
            expected = ", ".join(p.name for p in tool.parameters)
            return ToolCallResult.error(
                tool_name,
                f"Missing required parameter '{missing[0]}' for tool "
                f"'{tool_name}'. Expected parameters: {expected}",
            )

        try:
            result = await tool.execute(dict(params))
        except Exception as e:
            _logger.warning("Tool %s raised: %s", tool_name, e, exc_info=True)
            return ToolCallResult.error(
                tool_name, f"Tool '{tool_name}' raised {type(e).__name__}: {e}",
            )

        text = result.result
        if tool.max_output > 0 and len(text) > tool.max_output:
            text = _smart_truncate(text, tool.max_output)
        return ToolCallResult(tool_name=tool_name, result=text, success=result.success)

    def get_prompt_description(self) -> str:
        return "\n".join(t.to_prompt_description() for t in self._tools.values())
