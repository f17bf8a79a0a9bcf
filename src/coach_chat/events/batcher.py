"""Coalesce high-frequency stream updates into a fixed notification cadence."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

_logger = logging.getLogger(__name__)

FlushFn = Callable[[], Awaitable[None]]


class UpdateBatcher:
    """Run *flush* at most once per *interval* while updates keep arriving.

    ``mark_dirty()`` never blocks: it only schedules a background flush, so
    the caller (the network read loop) is never held up by slow consumers.
    ``flush_now()`` forces a final flush before a message is finalized.
    """

    def __init__(self, flush: FlushFn, interval: float = 0.05) -> None:
        self._flush = flush
        self._interval = interval
        self._dirty = False
        self._task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self.flush_count = 0

    @property
    def pending(self) -> bool:
        return self._dirty

    def mark_dirty(self) -> None:
        self._dirty = True
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._delayed_flush())

    async def flush_now(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._run_flush()

    async def close(self) -> None:
        await self.flush_now()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _delayed_flush(self) -> None:
        # Updates marked while a flush is awaiting find this task still
        # running, so keep going until nothing is pending.
        while self._dirty:
            await asyncio.sleep(self._interval)
            await self._run_flush()

    async def _run_flush(self) -> None:
        async with self._lock:
            if not self._dirty:
                return
            self._dirty = False
            try:
                await self._flush()
            except asyncio.CancelledError:
                self._dirty = True
                raise
            except Exception:
                _logger.exception("Batched update flush failed")
            self.flush_count += 1
