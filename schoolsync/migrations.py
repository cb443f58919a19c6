"""Declared schema migrations for the local store.

Migrations are applied in version order at startup and recorded in
``schema_migrations``. They never depend on a storage engine's own upgrade
callbacks, so the schema version of a store file is always inspectable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import insert, select

from schoolsync.models.base import Base
from schoolsync.models.record import LocalRecord
from schoolsync.models.sync import SchemaMigration, SyncConflict, SyncMetadata, SyncQueueItem
from schoolsync.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    apply: Callable[[AsyncConnection], Awaitable[None]]


async def _create_core_tables(conn: AsyncConnection) -> None:
    # The conflict log is declared here, not created lazily on first conflict.
    await conn.run_sync(
        Base.metadata.create_all,
        tables=[LocalRecord.__table__, SyncQueueItem.__table__, SyncConflict.__table__],
    )


async def _create_sync_metadata(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all, tables=[SyncMetadata.__table__])


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "local records, sync queue, conflict log", _create_core_tables),
    Migration(2, "sync metadata", _create_sync_metadata),
)

LATEST_VERSION = max(m.version for m in MIGRATIONS)


async def applied_versions(conn: AsyncConnection) -> set[int]:
    """Return the migration versions recorded in the store."""
    await conn.run_sync(Base.metadata.create_all, tables=[SchemaMigration.__table__])
    result = await conn.execute(select(SchemaMigration.version))
    return set(result.scalars().all())


async def run_migrations(
    engine: AsyncEngine,
    migrations: tuple[Migration, ...] = MIGRATIONS,
) -> list[int]:
    """Apply every migration not yet recorded. Returns the newly applied versions."""
    newly_applied: list[int] = []
    async with engine.begin() as conn:
        done = await applied_versions(conn)
        for migration in sorted(migrations, key=lambda m: m.version):
            if migration.version in done:
                continue
            logger.info("Applying schema migration %d: %s", migration.version, migration.name)
            await migration.apply(conn)
            await conn.execute(
                insert(SchemaMigration).values(
                    version=migration.version,
                    name=migration.name,
                    applied_at=format_iso(now_utc()),
                )
            )
            newly_applied.append(migration.version)
    return newly_applied
