"""Connectivity monitor: the process-wide answer to "can we reach the server?".

Platform network signals feed ``report_offline()`` / ``report_online()``.
Going offline is reported at once; going online is only believed after one
successful health probe, because a link can be up while the API is not.
The monitor is the single writer of the status; everyone else subscribes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import httpx

if TYPE_CHECKING:
    from collections.abc import Callable

    from schoolsync.config import Settings

logger = logging.getLogger(__name__)


class ConnectivityStatus(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"


class HealthProbe(Protocol):
    async def __call__(self) -> bool: ...


class HttpHealthProbe:
    """Probe the remote health endpoint; any transport error or non-2xx is unreachable."""

    def __init__(self, client: httpx.AsyncClient, path: str = "/api/health") -> None:
        self.client = client
        self.path = path

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpHealthProbe:
        client = httpx.AsyncClient(
            base_url=settings.server_url.rstrip("/"),
            timeout=settings.probe_timeout_seconds,
        )
        return cls(client, settings.health_path)

    async def __call__(self) -> bool:
        try:
            resp = await self.client.head(self.path, headers={"Cache-Control": "no-store"})
        except httpx.HTTPError as exc:
            logger.debug("Health probe failed: %s", exc)
            return False
        return resp.is_success

    async def close(self) -> None:
        await self.client.aclose()


class ConnectivityMonitor:
    """Owns the online/offline status and notifies subscribers on transitions."""

    def __init__(
        self,
        probe: HealthProbe,
        *,
        check_interval: float = 30.0,
        initial: ConnectivityStatus = ConnectivityStatus.OFFLINE,
    ) -> None:
        self._probe = probe
        self._check_interval = check_interval
        self._status = initial
        self._callbacks: list[Callable[[ConnectivityStatus], None]] = []
        self._task: asyncio.Task[None] | None = None

    # ── Queries ──────────────────────────────────────

    def current(self) -> ConnectivityStatus:
        return self._status

    @property
    def is_online(self) -> bool:
        return self._status == ConnectivityStatus.ONLINE

    # ── Subscriptions ────────────────────────────────

    def on_change(
        self, callback: Callable[[ConnectivityStatus], None]
    ) -> Callable[[], None]:
        """Register a transition callback. Returns a function that unsubscribes it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._callbacks.remove(callback)

        return unsubscribe

    def _set(self, status: ConnectivityStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.info("Connectivity changed: %s", status)
        for callback in list(self._callbacks):
            try:
                callback(status)
            except Exception:
                logger.warning("Connectivity callback failed", exc_info=True)

    # ── Signals ──────────────────────────────────────

    def report_offline(self) -> None:
        """Platform says the network is gone. Fails fast: no probe needed."""
        self._set(ConnectivityStatus.OFFLINE)

    async def report_online(self) -> ConnectivityStatus:
        """Platform says the network is back; confirm with a probe before going online."""
        return await self.check()

    async def check(self) -> ConnectivityStatus:
        """Run one health probe and update the status from its result."""
        try:
            reachable = await self._probe()
        except Exception:
            logger.warning("Health probe raised", exc_info=True)
            reachable = False
        self._set(ConnectivityStatus.ONLINE if reachable else ConnectivityStatus.OFFLINE)
        return self._status

    # ── Lifecycle ────────────────────────────────────

    def start(self) -> None:
        """Start periodic probing on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="connectivity-monitor")
        logger.info("ConnectivityMonitor started (interval=%.0fs)", self._check_interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self._check_interval)
