"""Offline mutations: a local record write plus its queue entry, as one unit."""

from __future__ import annotations

import logging
import random
import string
from typing import TYPE_CHECKING, Any

from schoolsync.exceptions import RecordNotFoundError
from schoolsync.models.record import SyncStatus
from schoolsync.models.sync import Operation, QueueStatus
from schoolsync.services import local_store, sync_queue
from schoolsync.services.datetime_service import now_ms

if TYPE_CHECKING:
    from schoolsync.database import LocalDatabase
    from schoolsync.models.record import LocalRecord

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local_"
_BASE36 = string.digits + string.ascii_lowercase


def generate_local_id() -> str:
    """Return ``local_<epoch-ms>_<random base36>`` with a 7-character suffix."""
    suffix = "".join(random.choices(_BASE36, k=7))
    return f"{LOCAL_ID_PREFIX}{now_ms()}_{suffix}"


def is_local_id(record_id: str) -> bool:
    """True for ids minted on this client that the server has not assigned."""
    return record_id.startswith(LOCAL_ID_PREFIX)


async def create_offline(db: LocalDatabase, entity: str, payload: dict[str, Any]) -> LocalRecord:
    """Create a record locally and queue its CREATE.

    Both writes commit together; on ``StoreUnavailableError`` or
    ``LocalStorageError`` neither exists.
    """
    async with db.transaction() as session:
        record_id = generate_local_id()
        while await local_store.get_record(session, entity, record_id, include_deleted=True):
            record_id = generate_local_id()
        record = await local_store.put_record(
            session, local_store.new_record(entity, record_id, payload)
        )
        await sync_queue.enqueue(session, Operation.CREATE, entity, record_id, payload)
    logger.debug("Created %s %s offline", entity, record_id)
    return record


async def update_offline(
    db: LocalDatabase,
    entity: str,
    record_id: str,
    changes: dict[str, Any],
) -> LocalRecord:
    """Apply field changes locally and queue an UPDATE.

    Raises ``RecordNotFoundError`` if the record does not exist.
    """
    async with db.transaction() as session:
        record = await local_store.get_record(session, entity, record_id)
        if record is None:
            raise RecordNotFoundError(entity, record_id)
        record.payload = {**record.payload, **changes}
        record.version += 1
        record.local_updated_at = now_ms()
        record.sync_status = SyncStatus.PENDING
        await sync_queue.enqueue(session, Operation.UPDATE, entity, record_id, changes)
    return record


async def delete_offline(db: LocalDatabase, entity: str, record_id: str) -> None:
    """Delete a record locally.

    A record whose CREATE was never sent is removed together with its queued
    items, so CREATE followed by DELETE collapses to nothing. Once a CREATE
    has been attempted (in flight, backing off, or failed) the server may
    hold the record, so it is tombstoned and a DELETE is queued behind the
    CREATE instead. Unknown records are ignored.
    """
    async with db.transaction() as session:
        record = await local_store.get_record(session, entity, record_id)
        if record is None:
            return
        queued = await sync_queue.items_for(session, entity, record_id)
        create_attempted = any(
            item.operation == Operation.CREATE
            and (item.status == QueueStatus.IN_FLIGHT or item.attempts > 0)
            for item in queued
        )
        if record.server_id is None and not create_attempted:
            await local_store.delete_record(session, entity, record_id)
            cancelled = await sync_queue.cancel_entity(session, entity, record_id)
            logger.debug(
                "Dropped unsynced %s %s and %d queued item(s)", entity, record_id, cancelled
            )
            return
        record.deleted = True
        record.version += 1
        record.local_updated_at = now_ms()
        record.sync_status = SyncStatus.PENDING
        await sync_queue.enqueue(
            session, Operation.DELETE, entity, record_id, {"id": record.server_id or record_id}
        )
