"""FIFO of message ids waiting for connectivity."""

from __future__ import annotations

import asyncio
import logging

from coach_chat.storage.store import ConversationStore

_logger = logging.getLogger(__name__)


class OfflineQueue:
    """Ordered, duplicate-free queue guarded by a single lock.

    Connectivity callbacks and manual retries may touch the queue
    concurrently; every operation takes the lock and writes the new order
    through to the store.
    """

    def __init__(self, store: ConversationStore | None = None) -> None:
        self._store = store
        self._ids: list[str] = list(store.load_offline_queue()) if store else []
        self._lock = asyncio.Lock()

    async def enqueue(self, message_id: str, front: bool = False) -> bool:
        """Add *message_id* at the back (or *front*); False if already queued."""
        async with self._lock:
            if message_id in self._ids:
                return False
            if front:
                self._ids.insert(0, message_id)
            else:
                self._ids.append(message_id)
            self._save()
            return True

    async def dequeue(self) -> str | None:
        async with self._lock:
            if not self._ids:
                return None
            message_id = self._ids.pop(0)
            self._save()
            return message_id

    async def remove(self, message_id: str) -> bool:
        async with self._lock:
            if message_id not in self._ids:
                return False
            self._ids.remove(message_id)
            self._save()
            return True

    def snapshot(self) -> list[str]:
        return list(self._ids)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def _save(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save_offline_queue(list(self._ids))
        except Exception:
            _logger.exception("Failed to persist offline queue")
