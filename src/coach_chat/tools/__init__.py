"""Tool detection, registration and dispatch."""

from coach_chat.tools.base import FunctionTool, Tool
from coach_chat.tools.detector import Detection, MalformedCall, ToolCallDetector
from coach_chat.tools.registry import ToolRegistry

__all__ = [
    "Detection",
    "FunctionTool",
    "MalformedCall",
    "Tool",
    "ToolCallDetector",
    "ToolRegistry",
]
