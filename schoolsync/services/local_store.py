"""Local store: per-entity CRUD over ``local_records``.

All functions take an ``AsyncSession`` so that a record write and its queue
entry can share one ``LocalDatabase.transaction()``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select

from schoolsync.models.record import LocalRecord, SyncStatus
from schoolsync.models.sync import SyncConflict, SyncMetadata, SyncQueueItem
from schoolsync.services.datetime_service import now_ms

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from schoolsync.database import LocalDatabase

logger = logging.getLogger(__name__)


def new_record(entity: str, record_id: str, payload: dict[str, Any]) -> LocalRecord:
    """Build a fresh pending record at version 1."""
    return LocalRecord(
        entity=entity,
        id=record_id,
        server_id=None,
        payload=dict(payload),
        sync_status=SyncStatus.PENDING,
        local_updated_at=now_ms(),
        version=1,
        server_version=None,
        server_updated_at=None,
        deleted=False,
    )


async def put_record(session: AsyncSession, record: LocalRecord) -> LocalRecord:
    """Insert or overwrite a record by ``(entity, id)``."""
    merged = await session.merge(record)
    await session.flush()
    return merged


async def get_record(
    session: AsyncSession,
    entity: str,
    record_id: str,
    *,
    include_deleted: bool = False,
) -> LocalRecord | None:
    """Return a record or None. Tombstoned records are hidden unless asked for."""
    record = await session.get(LocalRecord, (entity, record_id))
    if record is None or (record.deleted and not include_deleted):
        return None
    return record


async def get_all_records(
    session: AsyncSession,
    entity: str,
    *,
    include_deleted: bool = False,
) -> list[LocalRecord]:
    """Return all records of an entity type, oldest local edit first.

    An entity type that was never written yields an empty list.
    """
    stmt = select(LocalRecord).where(LocalRecord.entity == entity)
    if not include_deleted:
        stmt = stmt.where(LocalRecord.deleted.is_(False))
    stmt = stmt.order_by(LocalRecord.local_updated_at, LocalRecord.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def find_by_server_id(
    session: AsyncSession, entity: str, server_id: str
) -> LocalRecord | None:
    """Look up the local copy of a server entity."""
    stmt = select(LocalRecord).where(
        LocalRecord.entity == entity, LocalRecord.server_id == server_id
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def delete_record(session: AsyncSession, entity: str, record_id: str) -> bool:
    """Remove a record outright. Returns True if a row was deleted."""
    result = await session.execute(
        delete(LocalRecord).where(LocalRecord.entity == entity, LocalRecord.id == record_id)
    )
    return bool(result.rowcount)  # type: ignore[attr-defined]


async def count_records(session: AsyncSession, entity: str | None = None) -> int:
    stmt = select(func.count()).select_from(LocalRecord).where(LocalRecord.deleted.is_(False))
    if entity is not None:
        stmt = stmt.where(LocalRecord.entity == entity)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def clear_store(db: LocalDatabase) -> None:
    """Destroy every local table's contents in one transaction (logout, reset)."""
    async with db.transaction() as session:
        await session.execute(delete(LocalRecord))
        await session.execute(delete(SyncQueueItem))
        await session.execute(delete(SyncConflict))
        await session.execute(delete(SyncMetadata))
    logger.info("Local store cleared")


async def get_metadata(session: AsyncSession, key: str) -> str | None:
    row = await session.get(SyncMetadata, key)
    return row.value if row is not None else None


async def set_metadata(session: AsyncSession, key: str, value: str) -> None:
    await session.merge(SyncMetadata(key=key, value=value))
