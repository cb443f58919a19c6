"""Shared test fixtures for schoolsync."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from schoolsync.config import Settings
from schoolsync.database import LocalDatabase
from schoolsync.exceptions import TransportError
from schoolsync.remote.http import HttpRemoteAPI
from schoolsync.server import create_app
from schoolsync.services.connectivity import ConnectivityMonitor
from schoolsync.services.entity_registry import EntityRegistry
from schoolsync.services.sync_engine import SyncEngine
from schoolsync.services.sync_queue import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable
    from pathlib import Path

    from fastapi import FastAPI

    from schoolsync.remote.base import RemoteAPI, RemoteChanges, RemoteRecord

logger = logging.getLogger(__name__)

FAST_RETRY = RetryPolicy(max_attempts=3, base_seconds=0.0, max_seconds=0.0, jitter=0.0)


class StaticProbe:
    """Health probe whose answer the test controls."""

    def __init__(self, reachable: bool = True) -> None:
        self.reachable = reachable
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        return self.reachable

    async def close(self) -> None:
        return None


class ScriptedRemote:
    """Wraps a real remote and lets a test script failures per call.

    ``failures`` are raised before the inner call (the request never lands).
    ``lost_responses`` lets the inner call land, then raises a transport
    error (the response is lost). ``before_call`` runs first on every
    mutation, e.g. to flip connectivity or block on an event.
    """

    def __init__(self, inner: RemoteAPI) -> None:
        self.inner = inner
        self.calls: list[tuple[str, str, str]] = []
        self.failures: list[Exception] = []
        self.lost_responses = 0
        self.before_call: Callable[[str, str], Awaitable[None]] | None = None
        self.in_flight: dict[tuple[str, str], int] = {}
        self.max_in_flight_per_entity = 0
        self.max_in_flight_total = 0

    async def _around(
        self, op: str, entity: str, key: str, call: Callable[[], Awaitable[Any]]
    ) -> Any:
        self.calls.append((op, entity, key))
        slot = (entity, key)
        self.in_flight[slot] = self.in_flight.get(slot, 0) + 1
        self.max_in_flight_per_entity = max(self.max_in_flight_per_entity, self.in_flight[slot])
        self.max_in_flight_total = max(self.max_in_flight_total, sum(self.in_flight.values()))
        try:
            if self.before_call is not None:
                await self.before_call(op, key)
            # Let other entity workers interleave.
            await asyncio.sleep(0)
            if self.failures:
                raise self.failures.pop(0)
            result = await call()
            if self.lost_responses:
                self.lost_responses -= 1
                raise TransportError("connection reset before response")
            return result
        finally:
            self.in_flight[slot] -= 1

    async def create(
        self,
        entity: str,
        client_id: str,
        payload: dict[str, Any],
        *,
        version: int,
        idempotency_key: str,
    ) -> RemoteRecord:
        return await self._around(
            "create",
            entity,
            client_id,
            lambda: self.inner.create(
                entity, client_id, payload, version=version, idempotency_key=idempotency_key
            ),
        )

    async def update(
        self,
        entity: str,
        server_id: str,
        payload: dict[str, Any],
        *,
        base_version: int | None,
        version: int,
        idempotency_key: str,
    ) -> RemoteRecord:
        return await self._around(
            "update",
            entity,
            server_id,
            lambda: self.inner.update(
                entity,
                server_id,
                payload,
                base_version=base_version,
                version=version,
                idempotency_key=idempotency_key,
            ),
        )

    async def delete(
        self, entity: str, server_id: str, *, base_version: int | None, idempotency_key: str
    ) -> None:
        await self._around(
            "delete",
            entity,
            server_id,
            lambda: self.inner.delete(
                entity, server_id, base_version=base_version, idempotency_key=idempotency_key
            ),
        )

    async def fetch_changes(self, since: str | None) -> RemoteChanges:
        return await self.inner.fetch_changes(since)

    async def close(self) -> None:
        await self.inner.close()


@asynccontextmanager
async def create_test_client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """HTTP client wired straight into the app; ASGITransport skips the lifespan."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


async def wait_for(predicate: Callable[[], Awaitable[bool]], timeout: float = 5.0) -> None:
    """Poll an async predicate until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary database and instant retries."""
    db_path = tmp_path / "test.db"
    return Settings(
        _env_file=None,
        debug=False,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        server_url="http://test",
        sync_interval_seconds=0,
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        backoff_jitter=0.0,
    )


@pytest.fixture
async def db(test_settings: Settings) -> AsyncGenerator[LocalDatabase]:
    """An opened, migrated local store."""
    database = LocalDatabase(test_settings)
    await database.open()
    yield database
    await database.close()


@pytest.fixture
def registry() -> EntityRegistry:
    return EntityRegistry()


@pytest.fixture
def app(test_settings: Settings, registry: EntityRegistry) -> FastAPI:
    return create_app(test_settings, registry)


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    async with create_test_client(app) as ac:
        yield ac


@pytest.fixture
def remote(client: AsyncClient) -> ScriptedRemote:
    """Reference server behind a scriptable wrapper."""
    return ScriptedRemote(HttpRemoteAPI(client))


@pytest.fixture
def probe() -> StaticProbe:
    return StaticProbe(reachable=True)


@pytest.fixture
async def monitor(probe: StaticProbe) -> ConnectivityMonitor:
    """Monitor that has already confirmed the server is reachable."""
    mon = ConnectivityMonitor(probe)
    await mon.check()
    return mon


@pytest.fixture
async def engine(
    db: LocalDatabase, remote: ScriptedRemote, monitor: ConnectivityMonitor
) -> AsyncGenerator[SyncEngine]:
    eng = SyncEngine(db, remote, monitor, policy=FAST_RETRY, pull_changes=False)
    yield eng
    await eng.stop()
