"""Tests for ConnectivityMonitor and the httpx probe."""

import asyncio

import httpx

from coach_chat.resilience.connectivity import (
    ConnectionType,
    ConnectivityMonitor,
    ProbeConnectivityMonitor,
)


class TestConnectivityMonitor:
    async def test_notifies_on_change_only(self):
        monitor = ConnectivityMonitor()
        changes = []
        monitor.on_change(lambda online, kind: changes.append((online, kind)))

        await monitor.update(True)
        await monitor.update(False)
        await monitor.update(False)
        await monitor.update(True, ConnectionType.WIFI)

        assert changes == [
            (False, ConnectionType.NONE),
            (True, ConnectionType.WIFI),
        ]
        assert monitor.is_online
        assert monitor.connection_type == ConnectionType.WIFI

    async def test_offline_forces_none(self):
        monitor = ConnectivityMonitor()
        await monitor.update(False, ConnectionType.CELLULAR)
        assert monitor.connection_type == ConnectionType.NONE

    async def test_async_callback_and_unsubscribe(self):
        monitor = ConnectivityMonitor()
        changes = []

        async def callback(online, kind):
            changes.append(online)

        unsubscribe = monitor.on_change(callback)
        await monitor.update(False)
        unsubscribe()
        await monitor.update(True)
        assert changes == [False]

    async def test_failing_callback_isolated(self):
        monitor = ConnectivityMonitor()
        changes = []

        def bad(online, kind):
            raise RuntimeError("listener crashed")

        monitor.on_change(bad)
        monitor.on_change(lambda online, kind: changes.append(online))
        await monitor.update(False)
        assert changes == [False]


class TestProbeConnectivityMonitor:
    async def test_any_response_is_online(self):
        def handler(request):
            assert request.method == "HEAD"
            return httpx.Response(503)

        monitor = ProbeConnectivityMonitor(
            "http://probe.test/", transport=httpx.MockTransport(handler),
        )
        assert await monitor.probe() is True
        assert monitor.is_online
        await monitor.stop()

    async def test_connect_error_is_offline(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        monitor = ProbeConnectivityMonitor(
            "http://probe.test/", transport=httpx.MockTransport(handler),
        )
        changes = []
        monitor.on_change(lambda online, kind: changes.append(online))

        assert await monitor.probe() is False
        assert changes == [False]
        await monitor.stop()

    async def test_start_probes_in_background(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        monitor = ProbeConnectivityMonitor(
            "http://probe.test/", interval=0.01, transport=httpx.MockTransport(handler),
        )
        monitor.start()
        for _ in range(50):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()
        assert len(calls) >= 2
