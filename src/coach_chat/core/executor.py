"""Executor: runs one turn's tool calls in parse order."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from coach_chat.events.bus import EventBus
from coach_chat.tools.registry import ToolRegistry
from coach_chat.types import EventType, ToolCall, ToolCallResult

_logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Result of executing one turn's tool calls."""

    results: list[tuple[ToolCall, ToolCallResult]] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for _, r in self.results)

    @property
    def tool_results(self) -> list[ToolCallResult]:
        return [r for _, r in self.results]


def format_tool_results(results: list[ToolCallResult]) -> str:
    """Render results as the text of the synthetic system message."""
    parts: list[str] = []
    for r in results:
        if r.success:
            parts.append(f"Tool '{r.tool_name}' executed successfully:\n{r.result}")
        else:
            parts.append(f"Tool '{r.tool_name}' failed: {r.result}")
    return "\n\n".join(parts)


class Executor:
    """Runs tool calls through the registry, strictly one after another.

    Later calls may read state written by earlier ones, so calls from the
    same turn never overlap, and each parsed call reaches its handler once.
    A failing call does not stop the ones after it.

    Usage::

        executor = Executor(registry, event_bus)
        result = await executor.execute(calls)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        event_bus: EventBus | None = None,
    ) -> None:
        self._registry = registry
        self._event_bus = event_bus

    async def execute(self, tool_calls: list[ToolCall]) -> ExecutionResult:
        exec_result = ExecutionResult()
        for tc in tool_calls:
            await self._emit(EventType.TOOL_EXECUTING, {
                "tool": tc.name,
                "params": dict(tc.params),
            })

            result = await self._registry.execute(tc.name, tc.params)

            if result.success:
                await self._emit(EventType.TOOL_EXECUTED, {
                    "tool": tc.name,
                    "output_length": len(result.result),
                })
            else:
                _logger.info("Tool %s failed: %s", tc.name, result.result)
                await self._emit(EventType.TOOL_ERROR, {
                    "tool": tc.name,
                    "error": result.result,
                })

            exec_result.results.append((tc, result))

        return exec_result

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.publish(event_type, **data)
