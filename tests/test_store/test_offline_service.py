"""Tests for offline create/update/delete."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from schoolsync.database import LocalDatabase
from schoolsync.exceptions import LocalStorageError, RecordNotFoundError, StoreUnavailableError
from schoolsync.models.record import SyncStatus
from schoolsync.models.sync import Operation, QueueStatus
from schoolsync.services import local_store, offline_service, sync_queue

if TYPE_CHECKING:
    from schoolsync.config import Settings
    from schoolsync.models.record import LocalRecord


async def _get(
    db: LocalDatabase, entity: str, record_id: str, *, include_deleted: bool = False
) -> LocalRecord | None:
    async with db.transaction() as session:
        return await local_store.get_record(
            session, entity, record_id, include_deleted=include_deleted
        )


class TestCreateOffline:
    async def test_writes_record_and_queue_item(self, db: LocalDatabase) -> None:
        record = await offline_service.create_offline(db, "students", {"name": "Ana"})

        assert offline_service.is_local_id(record.id)
        assert record.version == 1
        assert record.sync_status == SyncStatus.PENDING
        stored = await _get(db, "students", record.id)
        assert stored is not None
        assert stored.payload == {"name": "Ana"}

        items = await sync_queue.list_items(db)
        assert len(items) == 1
        assert items[0].operation == Operation.CREATE
        assert items[0].entity_id == record.id
        assert items[0].payload == {"name": "Ana"}

    async def test_queue_failure_rolls_back_record(
        self, db: LocalDatabase, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken_enqueue(*args: object, **kwargs: object) -> int:
            raise LocalStorageError("quota exceeded")

        monkeypatch.setattr(sync_queue, "enqueue", broken_enqueue)
        with pytest.raises(LocalStorageError):
            await offline_service.create_offline(db, "students", {"name": "Ana"})

        async with db.transaction() as session:
            assert await local_store.count_records(session) == 0

    async def test_survives_reload_while_offline(self, test_settings: Settings) -> None:
        first = LocalDatabase(test_settings)
        await first.open()
        record = await offline_service.create_offline(first, "students", {"name": "Ana"})
        await first.close()

        reopened = LocalDatabase(test_settings)
        await reopened.open()
        try:
            stored = await _get(reopened, "students", record.id)
            assert stored is not None
            assert stored.payload == {"name": "Ana"}
            assert stored.sync_status == SyncStatus.PENDING
            items = await sync_queue.list_items(reopened)
            assert [(i.operation, i.status, i.entity_id) for i in items] == [
                (Operation.CREATE, QueueStatus.PENDING, record.id)
            ]
        finally:
            await reopened.close()

    async def test_unopened_store_is_unavailable(self, test_settings: Settings) -> None:
        database = LocalDatabase(test_settings)
        with pytest.raises(StoreUnavailableError):
            await offline_service.create_offline(database, "students", {})
        await database.close()

    async def test_ids_are_unique(self, db: LocalDatabase) -> None:
        ids = {(await offline_service.create_offline(db, "students", {})).id for _ in range(20)}
        assert len(ids) == 20


class TestUpdateOffline:
    async def test_merges_and_bumps_version(self, db: LocalDatabase) -> None:
        record = await offline_service.create_offline(db, "students", {"name": "Ana", "grade": 3})
        updated = await offline_service.update_offline(db, "students", record.id, {"grade": 4})

        assert updated.payload == {"name": "Ana", "grade": 4}
        assert updated.version == 2
        items = await sync_queue.list_items(db)
        assert [i.operation for i in items] == [Operation.CREATE, Operation.UPDATE]
        assert items[1].payload == {"grade": 4}

    async def test_missing_record(self, db: LocalDatabase) -> None:
        with pytest.raises(RecordNotFoundError):
            await offline_service.update_offline(db, "students", "nope", {"grade": 4})
        assert await sync_queue.count(db) == 0

    async def test_synced_record_goes_back_to_pending(self, db: LocalDatabase) -> None:
        async with db.transaction() as session:
            record = local_store.new_record("students", "srv-1", {"grade": 3})
            record.server_id = "srv-1"
            record.server_version = 1
            record.sync_status = SyncStatus.SYNCED
            await local_store.put_record(session, record)

        updated = await offline_service.update_offline(db, "students", "srv-1", {"grade": 4})
        assert updated.sync_status == SyncStatus.PENDING


class TestDeleteOffline:
    async def test_unsynced_record_collapses(self, db: LocalDatabase) -> None:
        record = await offline_service.create_offline(db, "students", {"name": "Ana"})
        await offline_service.update_offline(db, "students", record.id, {"name": "Bo"})

        await offline_service.delete_offline(db, "students", record.id)

        assert await _get(db, "students", record.id, include_deleted=True) is None
        assert await sync_queue.count(db) == 0

    async def test_synced_record_is_tombstoned(self, db: LocalDatabase) -> None:
        async with db.transaction() as session:
            record = local_store.new_record("students", "local_1", {})
            record.server_id = "srv-1"
            record.server_version = 1
            record.sync_status = SyncStatus.SYNCED
            await local_store.put_record(session, record)

        await offline_service.delete_offline(db, "students", "local_1")

        assert await _get(db, "students", "local_1") is None
        tombstone = await _get(db, "students", "local_1", include_deleted=True)
        assert tombstone is not None
        assert tombstone.deleted is True
        items = await sync_queue.list_items(db)
        assert [i.operation for i in items] == [Operation.DELETE]
        assert items[0].payload == {"id": "srv-1"}

    async def test_create_in_flight_is_not_collapsed(self, db: LocalDatabase) -> None:
        record = await offline_service.create_offline(db, "students", {})
        claimed = await sync_queue.dequeue_next(db)
        assert claimed is not None

        await offline_service.delete_offline(db, "students", record.id)

        items = await sync_queue.list_items(db)
        assert [(i.operation, i.status) for i in items] == [
            (Operation.CREATE, QueueStatus.IN_FLIGHT),
            (Operation.DELETE, QueueStatus.PENDING),
        ]

    async def test_failed_create_is_not_collapsed(self, db: LocalDatabase) -> None:
        record = await offline_service.create_offline(db, "students", {})
        claimed = await sync_queue.dequeue_next(db)
        assert claimed is not None
        await sync_queue.mark_error(
            db, claimed.id, "response lost", sync_queue.RetryPolicy(), permanent=True
        )

        await offline_service.delete_offline(db, "students", record.id)

        tombstone = await _get(db, "students", record.id, include_deleted=True)
        assert tombstone is not None
        assert tombstone.deleted is True
        items = await sync_queue.list_items(db)
        assert [(i.operation, i.status) for i in items] == [
            (Operation.CREATE, QueueStatus.ERROR),
            (Operation.DELETE, QueueStatus.PENDING),
        ]

    async def test_unknown_record_is_ignored(self, db: LocalDatabase) -> None:
        await offline_service.delete_offline(db, "students", "nope")
        assert await sync_queue.count(db) == 0
