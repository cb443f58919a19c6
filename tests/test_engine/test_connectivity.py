"""Tests for the connectivity monitor and the HTTP health probe."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import httpx

from schoolsync.services.connectivity import (
    ConnectivityMonitor,
    ConnectivityStatus,
    HttpHealthProbe,
)

if TYPE_CHECKING:
    from conftest import StaticProbe
    from httpx import AsyncClient


class TestConnectivityMonitor:
    async def test_starts_offline_until_probed(self, probe: StaticProbe) -> None:
        monitor = ConnectivityMonitor(probe)
        assert monitor.current() == ConnectivityStatus.OFFLINE
        assert await monitor.check() == ConnectivityStatus.ONLINE
        assert monitor.is_online

    async def test_report_offline_is_immediate(self, probe: StaticProbe) -> None:
        monitor = ConnectivityMonitor(probe, initial=ConnectivityStatus.ONLINE)
        monitor.report_offline()
        assert monitor.current() == ConnectivityStatus.OFFLINE
        assert probe.calls == 0

    async def test_report_online_requires_probe(self, probe: StaticProbe) -> None:
        probe.reachable = False
        monitor = ConnectivityMonitor(probe)
        assert await monitor.report_online() == ConnectivityStatus.OFFLINE
        probe.reachable = True
        assert await monitor.report_online() == ConnectivityStatus.ONLINE
        assert probe.calls == 2

    async def test_callbacks_only_on_transitions(self, probe: StaticProbe) -> None:
        monitor = ConnectivityMonitor(probe)
        seen: list[ConnectivityStatus] = []
        unsubscribe = monitor.on_change(seen.append)

        await monitor.check()
        await monitor.check()
        monitor.report_offline()
        unsubscribe()
        await monitor.check()

        assert seen == [ConnectivityStatus.ONLINE, ConnectivityStatus.OFFLINE]

    async def test_failing_callback_does_not_block_others(self, probe: StaticProbe) -> None:
        monitor = ConnectivityMonitor(probe)
        seen: list[ConnectivityStatus] = []

        def broken(_: ConnectivityStatus) -> None:
            raise RuntimeError("listener bug")

        monitor.on_change(broken)
        monitor.on_change(seen.append)
        await monitor.check()
        assert seen == [ConnectivityStatus.ONLINE]

    async def test_probe_exception_means_offline(self) -> None:
        async def exploding() -> bool:
            raise OSError("no route to host")

        monitor = ConnectivityMonitor(exploding, initial=ConnectivityStatus.ONLINE)
        assert await monitor.check() == ConnectivityStatus.OFFLINE

    async def test_periodic_probing(self, probe: StaticProbe) -> None:
        monitor = ConnectivityMonitor(probe, check_interval=0.01)
        monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()
        assert monitor.is_online
        assert probe.calls >= 2


class TestHttpHealthProbe:
    async def test_reachable_server(self, client: AsyncClient) -> None:
        probe = HttpHealthProbe(client)
        assert await probe() is True

    async def test_wrong_path_is_unreachable(self, client: AsyncClient) -> None:
        probe = HttpHealthProbe(client, "/api/nope")
        assert await probe() is False

    async def test_transport_error_is_unreachable(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(refuse), base_url="http://test"
        ) as ac:
            assert await HttpHealthProbe(ac)() is False

    async def test_server_error_is_unreachable(self) -> None:
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
            base_url="http://test",
        ) as ac:
            assert await HttpHealthProbe(ac)() is False
