"""Network reachability reporting for the retry layer."""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from typing import Any, Callable

import httpx

_logger = logging.getLogger(__name__)


class ConnectionType(enum.Enum):
    NONE = "none"
    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    UNKNOWN = "unknown"


ChangeCallback = Callable[[bool, ConnectionType], Any]


class ConnectivityMonitor:
    """Holds the current reachability and notifies subscribers on change.

    Platform integrations (or tests) push state in through ``update()``.
    Callbacks may be sync or async and are called in subscription order.
    """

    def __init__(
        self,
        online: bool = True,
        connection_type: ConnectionType = ConnectionType.UNKNOWN,
    ) -> None:
        self._online = online
        self._type = connection_type if online else ConnectionType.NONE
        self._callbacks: list[ChangeCallback] = []

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def connection_type(self) -> ConnectionType:
        return self._type

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Subscribe *callback*; returns a function that unsubscribes it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def update(
        self,
        online: bool,
        connection_type: ConnectionType | None = None,
    ) -> None:
        """Record new state; subscribers hear only about actual changes."""
        new_type = connection_type or (
            ConnectionType.UNKNOWN if online else ConnectionType.NONE
        )
        if not online:
            new_type = ConnectionType.NONE
        if online == self._online and new_type == self._type:
            return
        self._online = online
        self._type = new_type
        _logger.info("Connectivity changed: online=%s type=%s", online, new_type.value)

        for callback in list(self._callbacks):
            try:
                result = callback(online, new_type)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _logger.exception("Connectivity callback %s raised", callback)


class ProbeConnectivityMonitor(ConnectivityMonitor):
    """Monitor that polls *url* with httpx to decide reachability.

    Any HTTP response counts as online; connection errors and timeouts
    count as offline.
    """

    def __init__(
        self,
        url: str,
        interval: float = 5.0,
        timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(online=True)
        self._url = url
        self._interval = interval
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._task: asyncio.Task[None] | None = None

    async def probe(self) -> bool:
        try:
            await self._client.head(self._url)
        except httpx.HTTPError as e:
            _logger.debug("Connectivity probe failed: %s", e)
            online = False
        else:
            online = True
        await self.update(online)
        return online

    async def _run(self) -> None:
        while True:
            await self.probe()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self._client.aclose()
