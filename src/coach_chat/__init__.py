"""Conversation orchestration engine for a coaching chat client."""

__version__ = "0.1.0"
