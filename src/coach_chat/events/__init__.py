"""Event delivery for the chat engine."""

from coach_chat.events.batcher import UpdateBatcher
from coach_chat.events.bus import EventBus

__all__ = ["EventBus", "UpdateBatcher"]
