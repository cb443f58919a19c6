"""Conflict log: append-only audit trail of server-wins resolutions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from schoolsync.models.sync import SyncConflict
from schoolsync.services.datetime_service import now_ms

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from schoolsync.database import LocalDatabase

logger = logging.getLogger(__name__)

SERVER_WINS = "server_wins"


async def record_conflict(
    session: AsyncSession,
    *,
    entity: str,
    entity_id: str,
    local_version: int,
    server_version: int,
    local_payload: dict[str, Any],
    server_payload: dict[str, Any],
) -> SyncConflict:
    """Append a conflict entry. Entries are never updated or deleted by the engine."""
    conflict = SyncConflict(
        entity=entity,
        entity_id=entity_id,
        local_version=local_version,
        server_version=server_version,
        local_payload=dict(local_payload),
        server_payload=dict(server_payload),
        resolution=SERVER_WINS,
        detected_at=now_ms(),
    )
    session.add(conflict)
    await session.flush()
    logger.warning(
        "Conflict on %s %s: local v%d vs server v%d, server wins",
        entity,
        entity_id,
        local_version,
        server_version,
    )
    return conflict


async def list_conflicts(
    db: LocalDatabase,
    entity: str | None = None,
    entity_id: str | None = None,
) -> list[SyncConflict]:
    """Conflicts in detection order."""
    stmt = select(SyncConflict).order_by(SyncConflict.id)
    if entity is not None:
        stmt = stmt.where(SyncConflict.entity == entity)
    if entity_id is not None:
        stmt = stmt.where(SyncConflict.entity_id == entity_id)
    async with db.transaction() as session:
        result = await session.execute(stmt)
        return list(result.scalars().all())


async def count_conflicts(db: LocalDatabase) -> int:
    async with db.transaction() as session:
        result = await session.execute(select(func.count()).select_from(SyncConflict))
        return int(result.scalar_one())
