"""Model transport for the chat engine."""

from coach_chat.llm.client import AsyncLLMClient, Transport, error_for_status
from coach_chat.llm.response_parser import SSEParser, parse_completion

__all__ = [
    "AsyncLLMClient",
    "SSEParser",
    "Transport",
    "error_for_status",
    "parse_completion",
]
