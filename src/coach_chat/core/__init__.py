"""Conversation orchestration core."""

from coach_chat.core.accumulator import FinalizedResponse, ResponseAccumulator
from coach_chat.core.executor import ExecutionResult, Executor, format_tool_results
from coach_chat.core.history import ConversationHistory, is_api_visible
from coach_chat.core.orchestrator import TurnOrchestrator

__all__ = [
    "ConversationHistory",
    "ExecutionResult",
    "Executor",
    "FinalizedResponse",
    "ResponseAccumulator",
    "TurnOrchestrator",
    "format_tool_results",
    "is_api_visible",
]
