"""Sync engine: drains the sync queue against the remote API.

State machine ``idle -> syncing -> idle | error``. A run recovers orphaned
in-flight items, replays queued mutations with at most
``max_concurrent_entities`` entity workers (never two items of the same
entity id at once), applies server-wins conflict resolution, and finally
pulls remote changes. Nothing escapes the background loop: every failure is
recorded against its queue item and the run moves on.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from schoolsync.exceptions import (
    RemoteConflictError,
    RemoteError,
    RemoteNotFoundError,
    RemoteRejectedError,
    TransportError,
)
from schoolsync.models.record import LocalRecord, SyncStatus
from schoolsync.models.sync import Operation, QueueStatus, SyncQueueItem
from schoolsync.services import conflict_log, local_store, sync_queue
from schoolsync.services.connectivity import ConnectivityStatus
from schoolsync.services.datetime_service import now_ms, to_ms
from schoolsync.services.sync_queue import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from schoolsync.config import Settings
    from schoolsync.database import LocalDatabase
    from schoolsync.remote.base import RemoteAPI, RemoteChange, RemoteRecord
    from schoolsync.services.connectivity import ConnectivityMonitor

logger = logging.getLogger(__name__)

LAST_SERVER_TIMESTAMP = "last_server_timestamp"
LAST_SYNC_AT = "last_sync_at"


class EngineState(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class IndicatorStatus(StrEnum):
    """Values rendered by the UI sync indicator."""

    ONLINE = "online"
    OFFLINE = "offline"
    SYNCING = "syncing"
    PENDING = "pending"
    ERROR = "error"


def resolve_indicator(
    connectivity: ConnectivityStatus,
    state: EngineState,
    pending_count: int,
    error_count: int,
) -> IndicatorStatus:
    """Collapse connectivity, engine state, and queue counts into one indicator value."""
    if connectivity == ConnectivityStatus.OFFLINE:
        return IndicatorStatus.OFFLINE
    if state == EngineState.SYNCING:
        return IndicatorStatus.SYNCING
    if state == EngineState.ERROR or error_count > 0:
        return IndicatorStatus.ERROR
    if pending_count > 0:
        return IndicatorStatus.PENDING
    return IndicatorStatus.ONLINE


@dataclass
class SyncResult:
    """Outcome of one sync run."""

    success: bool
    synced: int = 0
    failed: int = 0
    conflicts: int = 0
    pulled: int = 0
    error: str | None = None


@dataclass
class SyncSnapshot:
    """Point-in-time engine status for the UI."""

    state: EngineState
    connectivity: ConnectivityStatus
    pending_count: int
    error_count: int
    last_sync_at: int | None
    last_error: str | None

    @property
    def indicator(self) -> IndicatorStatus:
        return resolve_indicator(
            self.connectivity, self.state, self.pending_count, self.error_count
        )


class SyncEngine:
    """Orchestrates replay of the sync queue whenever the server is reachable."""

    def __init__(
        self,
        db: LocalDatabase,
        remote: RemoteAPI,
        monitor: ConnectivityMonitor,
        *,
        policy: RetryPolicy | None = None,
        max_concurrent_entities: int = 4,
        sync_interval: float = 0.0,
        pull_changes: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._db = db
        self._remote = remote
        self._monitor = monitor
        self._policy = policy or RetryPolicy()
        self._max_concurrent = max_concurrent_entities
        self._sync_interval = sync_interval
        self._pull_changes = pull_changes
        self._sleep = sleep

        self._state = EngineState.IDLE
        self._last_sync_at: int | None = None
        self._last_error: str | None = None
        self._listeners: list[Callable[[EngineState], None]] = []
        self._current: asyncio.Task[SyncResult] | None = None
        self._periodic: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[object]] = set()
        self._unsubscribe_monitor: Callable[[], None] | None = None
        # Bumped by reset(); work started under an older generation is discarded.
        self._generation = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        db: LocalDatabase,
        remote: RemoteAPI,
        monitor: ConnectivityMonitor,
    ) -> SyncEngine:
        return cls(
            db,
            remote,
            monitor,
            policy=RetryPolicy.from_settings(settings),
            max_concurrent_entities=settings.max_concurrent_entities,
            sync_interval=settings.sync_interval_seconds,
            pull_changes=settings.pull_remote_changes,
        )

    # ── Status ───────────────────────────────────────

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._current is not None and not self._current.done()

    async def status(self) -> SyncSnapshot:
        pending = await sync_queue.count(self._db, QueueStatus.PENDING)
        in_flight = await sync_queue.count(self._db, QueueStatus.IN_FLIGHT)
        errors = await sync_queue.count(self._db, QueueStatus.ERROR)
        return SyncSnapshot(
            state=self._state,
            connectivity=self._monitor.current(),
            pending_count=pending + in_flight,
            error_count=errors,
            last_sync_at=self._last_sync_at,
            last_error=self._last_error,
        )

    async def indicator(self) -> IndicatorStatus:
        return (await self.status()).indicator

    def subscribe(self, callback: Callable[[EngineState], None]) -> Callable[[], None]:
        """Register a state-change listener; it is called once immediately."""
        self._listeners.append(callback)
        callback(self._state)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(callback)

        return unsubscribe

    def _set_state(self, state: EngineState) -> None:
        if state == self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.warning("Sync state listener failed", exc_info=True)

    # ── Lifecycle ────────────────────────────────────

    async def start(self) -> None:
        """Hook into the connectivity monitor and sync leftovers from the last session."""
        recovered = await sync_queue.recover_in_flight(self._db)
        if recovered:
            logger.info("Re-issuing %d item(s) interrupted in a previous session", recovered)
        if self._unsubscribe_monitor is None:
            self._unsubscribe_monitor = self._monitor.on_change(self._on_connectivity_change)
        if self._sync_interval > 0 and self._periodic is None:
            self._periodic = asyncio.create_task(self._run_periodic(), name="periodic-sync")
        if self._monitor.is_online and await sync_queue.count(self._db, QueueStatus.PENDING):
            self.request_sync()

    async def stop(self) -> None:
        """Stop triggering syncs and wait for the current run to wind down."""
        if self._unsubscribe_monitor is not None:
            self._unsubscribe_monitor()
            self._unsubscribe_monitor = None
        if self._periodic is not None:
            self._periodic.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._periodic
            self._periodic = None
        self._generation += 1
        pending = [t for t in (self._current, *self._background) if t is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._current = None
        self._set_state(EngineState.IDLE)

    def _spawn(self, coro: Awaitable[object]) -> None:
        task: asyncio.Task[object] = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_connectivity_change(self, status: ConnectivityStatus) -> None:
        if status == ConnectivityStatus.ONLINE:
            self._spawn(self._sync_if_pending())

    async def _sync_if_pending(self) -> None:
        if self._unsubscribe_monitor is None:
            return
        if await sync_queue.count(self._db, QueueStatus.PENDING) or await sync_queue.count(
            self._db, QueueStatus.IN_FLIGHT
        ):
            await self.request_sync()

    async def _run_periodic(self) -> None:
        while True:
            await self._sleep(self._sync_interval)
            if self._monitor.is_online:
                await asyncio.shield(self.request_sync())

    # ── Triggers ─────────────────────────────────────

    def request_sync(self) -> asyncio.Task[SyncResult]:
        """Start a run, or join the one already in progress."""
        if self._current is None or self._current.done():
            self._current = asyncio.create_task(self._run(), name="sync-run")
        return self._current

    async def trigger_manual_sync(self) -> SyncResult:
        """Explicit "sync now" from the UI. Cancelling the caller leaves the shared run alone."""
        return await asyncio.shield(self.request_sync())

    async def retry_failed(self, item_id: int | None = None) -> SyncResult:
        """Re-arm terminal error items and sync them."""
        await sync_queue.retry_failed(self._db, item_id)
        if self._state == EngineState.ERROR:
            self._set_state(EngineState.IDLE)
        return await self.request_sync()

    async def reset(self) -> None:
        """Abort syncing and clear the local store (logout, test teardown).

        Remote calls already in flight finish in the background; their
        responses are discarded.
        """
        self._generation += 1
        if self._current is not None and not self._current.done():
            self._background.add(self._current)  # type: ignore[arg-type]
            self._current.add_done_callback(self._background.discard)
        self._current = None
        await local_store.clear_store(self._db)
        self._last_error = None
        self._last_sync_at = None
        self._set_state(EngineState.IDLE)

    # ── Run ──────────────────────────────────────────

    def _active(self, generation: int) -> bool:
        return generation == self._generation and self._monitor.is_online

    async def _run(self) -> SyncResult:
        if not self._monitor.is_online:
            return SyncResult(success=False, error="offline")

        generation = self._generation
        result = SyncResult(success=True)
        self._set_state(EngineState.SYNCING)
        try:
            await sync_queue.recover_in_flight(self._db)
            await self._push(result, generation)
            if self._pull_changes and self._active(generation):
                await self._pull(result, generation)
            if generation != self._generation:
                return result
            errors = await sync_queue.count(self._db, QueueStatus.ERROR)
            self._last_sync_at = now_ms()
            async with self._db.transaction() as session:
                await local_store.set_metadata(session, LAST_SYNC_AT, str(self._last_sync_at))
            self._last_error = None if not errors else f"{errors} item(s) failed to sync"
            self._set_state(EngineState.ERROR if errors else EngineState.IDLE)
            logger.info(
                "Sync finished: %d synced, %d failed, %d conflict(s), %d pulled",
                result.synced,
                result.failed,
                result.conflicts,
                result.pulled,
            )
        except Exception as exc:
            logger.exception("Sync run aborted")
            result.success = False
            result.error = str(exc)
            self._last_error = str(exc)
            self._set_state(EngineState.ERROR)
        return result

    async def _push(self, result: SyncResult, generation: int) -> None:
        semaphore = asyncio.Semaphore(self._max_concurrent)
        while self._active(generation):
            entities = await sync_queue.pending_entities(self._db)
            if not entities:
                return
            progress: list[int] = []
            await asyncio.gather(
                *(
                    self._drain_entity(entity, entity_id, semaphore, result, generation, progress)
                    for entity, entity_id in entities
                )
            )
            if not progress:
                # Every remaining head is blocked behind an in-flight or failed item.
                return

    async def _drain_entity(
        self,
        entity: str,
        entity_id: str,
        semaphore: asyncio.Semaphore,
        result: SyncResult,
        generation: int,
        progress: list[int],
    ) -> None:
        async with semaphore:
            try:
                while self._active(generation):
                    item = await sync_queue.dequeue_next(self._db, entity, entity_id)
                    if item is None:
                        gate = await sync_queue.next_attempt_at(self._db, entity, entity_id)
                        if gate is None:
                            return
                        await self._sleep(max(0.0, (gate - now_ms()) / 1000))
                        continue
                    progress.append(item.id)
                    if not await self._replay(item, result, generation):
                        return
            except Exception:
                logger.exception("Entity worker for %s %s failed", entity, entity_id)

    async def _replay(self, item: SyncQueueItem, result: SyncResult, generation: int) -> bool:
        """Replay one item. Returns False when the worker should stop."""
        async with self._db.transaction() as session:
            record = await local_store.get_record(
                session, item.entity, item.entity_id, include_deleted=True
            )
        if record is None:
            if generation != self._generation:
                return False
            logger.info(
                "Dropping queue item %d: %s %s no longer exists",
                item.id,
                item.entity,
                item.entity_id,
            )
            await sync_queue.mark_done(self._db, item.id)
            return True

        try:
            remote_record = await self._call_remote(item, record)
        except TransportError as exc:
            # Tell "server unreachable" apart from a failed request.
            if await self._monitor.check() == ConnectivityStatus.OFFLINE:
                logger.info("Connection lost during queue item %d; leaving it in flight", item.id)
                return False
            return await self._retry_later(item, str(exc), result)
        except RemoteConflictError as exc:
            if await self._resolve_conflict(item, exc.record, generation):
                result.conflicts += 1
            return False
        except RemoteNotFoundError as exc:
            if item.operation == Operation.DELETE:
                await self._apply_delete(item, generation)
                result.synced += 1
                return True
            await sync_queue.mark_error(self._db, item.id, str(exc), self._policy, permanent=True)
            result.failed += 1
            return False
        except RemoteRejectedError as exc:
            await sync_queue.mark_error(self._db, item.id, str(exc), self._policy, permanent=True)
            result.failed += 1
            return False
        except RemoteError as exc:
            return await self._retry_later(item, str(exc), result)
        except Exception as exc:
            logger.exception("Queue item %d failed unexpectedly", item.id)
            return await self._retry_later(item, repr(exc), result)

        if remote_record is None:
            await self._apply_delete(item, generation)
            result.synced += 1
            return True
        outcome = await self._apply_success(item, remote_record, generation)
        if outcome == "conflict":
            result.conflicts += 1
            return False
        if outcome == "synced":
            result.synced += 1
        return True

    async def _retry_later(self, item: SyncQueueItem, error: str, result: SyncResult) -> bool:
        """Count a failed attempt against the item. False once it is terminal."""
        failed = await sync_queue.mark_error(self._db, item.id, error, self._policy)
        if failed is not None and failed.status == QueueStatus.ERROR:
            result.failed += 1
            return False
        return True

    async def _call_remote(
        self, item: SyncQueueItem, record: LocalRecord
    ) -> RemoteRecord | None:
        if item.operation == Operation.CREATE:
            return await self._remote.create(
                item.entity,
                item.entity_id,
                item.payload,
                version=record.version,
                idempotency_key=item.mutation_id,
            )
        server_id = record.server_id
        if item.operation == Operation.UPDATE:
            if server_id is None:
                raise RemoteRejectedError(0, "record has no server id; its CREATE never synced")
            return await self._remote.update(
                item.entity,
                server_id,
                item.payload,
                base_version=record.server_version,
                version=record.version,
                idempotency_key=item.mutation_id,
            )
        if server_id is None:
            # The server never saw this record; nothing to delete remotely.
            return None
        await self._remote.delete(
            item.entity,
            server_id,
            base_version=record.server_version,
            idempotency_key=item.mutation_id,
        )
        return None

    async def _apply_success(
        self, item: SyncQueueItem, remote: RemoteRecord, generation: int
    ) -> str:
        """Store the authoritative record. Returns "synced", "conflict" or "discarded"."""
        async with self._db.transaction() as session:
            record = await local_store.get_record(
                session, item.entity, item.entity_id, include_deleted=True
            )
            if record is None or generation != self._generation:
                logger.info(
                    "Discarding response for %s %s (store was reset)", item.entity, item.entity_id
                )
                return "discarded"

            expected = (record.server_version or 0) + 1
            if remote.version > expected:
                # Someone else changed the entity on top of the version we knew.
                await self._overwrite_with_server(session, record, remote)
                return "conflict"

            record.server_id = remote.server_id
            record.server_version = remote.version
            record.server_updated_at = now_ms()
            await sync_queue.cancel(session, item.id)
            remaining = await sync_queue.items_for(session, item.entity, item.entity_id)
            if not remaining:
                record.sync_status = SyncStatus.SYNCED
        return "synced"

    async def _resolve_conflict(
        self, item: SyncQueueItem, remote: RemoteRecord, generation: int
    ) -> bool:
        async with self._db.transaction() as session:
            record = await local_store.get_record(
                session, item.entity, item.entity_id, include_deleted=True
            )
            if record is None or generation != self._generation:
                return False
            await self._overwrite_with_server(session, record, remote)
        return True

    async def _overwrite_with_server(
        self, session: AsyncSession, record: LocalRecord, remote: RemoteRecord
    ) -> None:
        """Server wins: log the divergence, adopt the server copy, drop superseded edits."""
        await conflict_log.record_conflict(
            session,
            entity=record.entity,
            entity_id=record.id,
            local_version=record.version,
            server_version=remote.version,
            local_payload=record.payload,
            server_payload=remote.payload,
        )
        record.payload = dict(remote.payload)
        record.server_id = remote.server_id
        record.server_version = remote.version
        record.server_updated_at = now_ms()
        record.deleted = False
        record.sync_status = SyncStatus.SYNCED
        dropped = await sync_queue.cancel_entity(session, record.entity, record.id)
        logger.info(
            "Dropped %d superseded queue item(s) for %s %s", dropped, record.entity, record.id
        )

    async def _apply_delete(self, item: SyncQueueItem, generation: int) -> None:
        async with self._db.transaction() as session:
            if generation != self._generation:
                return
            await local_store.delete_record(session, item.entity, item.entity_id)
            await sync_queue.cancel_entity(session, item.entity, item.entity_id)

    # ── Pull ─────────────────────────────────────────

    async def _pull(self, result: SyncResult, generation: int) -> None:
        async with self._db.transaction() as session:
            since = await local_store.get_metadata(session, LAST_SERVER_TIMESTAMP)
        try:
            feed = await self._remote.fetch_changes(since)
        except RemoteError as exc:
            logger.warning("Pulling remote changes failed: %s", exc)
            return

        async with self._db.transaction() as session:
            if generation != self._generation:
                return
            for change in feed.changes:
                if await self._apply_remote_change(session, change):
                    result.pulled += 1
            await local_store.set_metadata(session, LAST_SERVER_TIMESTAMP, feed.server_timestamp)

    async def _apply_remote_change(self, session: AsyncSession, change: RemoteChange) -> bool:
        remote = change.record
        local = await local_store.find_by_server_id(session, change.entity, remote.server_id)
        if local is not None and await sync_queue.items_for(session, local.entity, local.id):
            # Local edits are queued; the push path detects any conflict.
            return False

        if change.operation == "deleted":
            if local is None:
                return False
            await local_store.delete_record(session, local.entity, local.id)
            return True

        server_updated_at = to_ms(remote.updated_at) if remote.updated_at else now_ms()
        if local is None:
            record = local_store.new_record(change.entity, remote.server_id, remote.payload)
            record.server_id = remote.server_id
            record.server_version = remote.version
            record.server_updated_at = server_updated_at
            record.sync_status = SyncStatus.SYNCED
            await local_store.put_record(session, record)
            return True
        if remote.version <= (local.server_version or 0):
            return False
        local.payload = dict(remote.payload)
        local.server_version = remote.version
        local.server_updated_at = server_updated_at
        local.sync_status = SyncStatus.SYNCED
        return True
