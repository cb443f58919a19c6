"""Sync queue: ordered, durable log of mutations awaiting replay.

Replay order is global enqueue order, except that an item is only eligible
while it is the head of its entity's queue: no earlier item for the same
``(entity, entity_id)`` may exist in any state. An in-flight or failed item
therefore blocks everything enqueued after it for that entity, which keeps a
DELETE from overtaking the CREATE/UPDATE it follows.
"""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import aliased

from schoolsync.models.record import LocalRecord, SyncStatus
from schoolsync.models.sync import Operation, QueueStatus, SyncQueueItem
from schoolsync.services.datetime_service import now_ms

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from schoolsync.config import Settings
    from schoolsync.database import LocalDatabase

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 500


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt cap and exponential backoff schedule for failed replays."""

    max_attempts: int = 5
    base_seconds: float = 1.0
    max_seconds: float = 8.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_seconds=settings.backoff_base_seconds,
            max_seconds=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter,
        )


def compute_backoff(
    attempts: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before retry number ``attempts`` (1s, 2s, 4s, 8s... capped).

    Jitter shortens the delay by up to ``policy.jitter`` of its length, so the
    result never exceeds ``policy.max_seconds``.
    """
    if attempts <= 0:
        return 0.0
    delay = min(policy.max_seconds, policy.base_seconds * (2 ** (attempts - 1)))
    return delay * (1.0 - policy.jitter * rand())


async def enqueue(
    session: AsyncSession,
    operation: Operation,
    entity: str,
    entity_id: str,
    payload: dict[str, Any],
) -> int:
    """Append a mutation and return its queue id.

    Runs inside the caller's transaction so the record write and the queue
    entry commit together.
    """
    item = SyncQueueItem(
        mutation_id=uuid.uuid4().hex,
        operation=operation,
        entity=entity,
        entity_id=entity_id,
        payload=dict(payload),
        created_at=now_ms(),
        attempts=0,
        status=QueueStatus.PENDING,
        next_attempt_at=0,
    )
    session.add(item)
    await session.flush()
    return item.id


async def dequeue_next(
    db: LocalDatabase,
    entity: str | None = None,
    entity_id: str | None = None,
) -> SyncQueueItem | None:
    """Claim the oldest eligible pending item and mark it in flight.

    Returns None when nothing qualifies (empty queue, all heads blocked, or
    all pending items still waiting out their backoff).
    """
    now = now_ms()
    earlier = aliased(SyncQueueItem)
    blocked = (
        select(earlier.id)
        .where(
            earlier.entity == SyncQueueItem.entity,
            earlier.entity_id == SyncQueueItem.entity_id,
            earlier.id < SyncQueueItem.id,
        )
        .exists()
    )
    stmt = select(SyncQueueItem).where(
        SyncQueueItem.status == QueueStatus.PENDING,
        SyncQueueItem.next_attempt_at <= now,
        ~blocked,
    )
    if entity is not None:
        stmt = stmt.where(SyncQueueItem.entity == entity)
    if entity_id is not None:
        stmt = stmt.where(SyncQueueItem.entity_id == entity_id)
    stmt = stmt.order_by(SyncQueueItem.id).limit(1)

    async with db.dequeue_lock, db.transaction() as session:
        result = await session.execute(stmt)
        item = result.scalars().first()
        if item is None:
            return None
        item.status = QueueStatus.IN_FLIGHT
        item.last_attempt_at = now
    return item


async def mark_done(db: LocalDatabase, item_id: int) -> None:
    """Terminal success: the item leaves the queue."""
    async with db.transaction() as session:
        await session.execute(delete(SyncQueueItem).where(SyncQueueItem.id == item_id))


async def mark_error(
    db: LocalDatabase,
    item_id: int,
    error: str,
    policy: RetryPolicy,
    *,
    permanent: bool = False,
) -> SyncQueueItem | None:
    """Record a failed replay.

    The item returns to ``pending`` behind a backoff gate, or stays in
    ``error`` once ``policy.max_attempts`` is reached (or immediately when
    ``permanent``). Terminal items are excluded from automatic retry and
    their record is flagged ``error``. Returns None if the item is gone.
    """
    now = now_ms()
    async with db.transaction() as session:
        item = await session.get(SyncQueueItem, item_id)
        if item is None:
            return None
        item.attempts += 1
        item.last_error = error[:_MAX_ERROR_LENGTH]
        item.last_attempt_at = now
        if permanent or item.attempts >= policy.max_attempts:
            item.status = QueueStatus.ERROR
            item.next_attempt_at = now
            record = await session.get(LocalRecord, (item.entity, item.entity_id))
            if record is not None:
                record.sync_status = SyncStatus.ERROR
            logger.warning(
                "Queue item %d (%s %s %s) failed permanently after %d attempt(s): %s",
                item.id,
                item.operation,
                item.entity,
                item.entity_id,
                item.attempts,
                error,
            )
        else:
            item.status = QueueStatus.PENDING
            item.next_attempt_at = now + int(compute_backoff(item.attempts, policy) * 1000)
            logger.info(
                "Queue item %d failed (attempt %d/%d), retry at %d: %s",
                item.id,
                item.attempts,
                policy.max_attempts,
                item.next_attempt_at,
                error,
            )
    return item


async def cancel(session: AsyncSession, item_id: int) -> bool:
    """Remove an item outright. Returns True if it existed."""
    result = await session.execute(delete(SyncQueueItem).where(SyncQueueItem.id == item_id))
    return bool(result.rowcount)  # type: ignore[attr-defined]


async def cancel_entity(session: AsyncSession, entity: str, entity_id: str) -> int:
    """Remove every queued item for one entity id. Returns the number removed."""
    result = await session.execute(
        delete(SyncQueueItem).where(
            SyncQueueItem.entity == entity,
            SyncQueueItem.entity_id == entity_id,
        )
    )
    return int(result.rowcount)  # type: ignore[attr-defined]


async def items_for(session: AsyncSession, entity: str, entity_id: str) -> list[SyncQueueItem]:
    """Queued items for one entity id, in enqueue order."""
    stmt = (
        select(SyncQueueItem)
        .where(SyncQueueItem.entity == entity, SyncQueueItem.entity_id == entity_id)
        .order_by(SyncQueueItem.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count(
    db: LocalDatabase,
    status: QueueStatus | None = None,
    entity: str | None = None,
) -> int:
    """Number of queued items, optionally filtered by status and entity type."""
    stmt = select(func.count()).select_from(SyncQueueItem)
    if status is not None:
        stmt = stmt.where(SyncQueueItem.status == status)
    if entity is not None:
        stmt = stmt.where(SyncQueueItem.entity == entity)
    async with db.transaction() as session:
        result = await session.execute(stmt)
        return int(result.scalar_one())


async def list_items(
    db: LocalDatabase,
    status: QueueStatus | None = None,
    entity: str | None = None,
) -> list[SyncQueueItem]:
    stmt = select(SyncQueueItem).order_by(SyncQueueItem.id)
    if status is not None:
        stmt = stmt.where(SyncQueueItem.status == status)
    if entity is not None:
        stmt = stmt.where(SyncQueueItem.entity == entity)
    async with db.transaction() as session:
        result = await session.execute(stmt)
        return list(result.scalars().all())


async def pending_entities(db: LocalDatabase) -> list[tuple[str, str]]:
    """Entity ids with pending work, ordered by their oldest pending item."""
    stmt = (
        select(SyncQueueItem.entity, SyncQueueItem.entity_id)
        .where(SyncQueueItem.status == QueueStatus.PENDING)
        .group_by(SyncQueueItem.entity, SyncQueueItem.entity_id)
        .order_by(func.min(SyncQueueItem.id))
    )
    async with db.transaction() as session:
        result = await session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]


async def recover_in_flight(db: LocalDatabase) -> int:
    """Return orphaned in-flight items to ``pending`` so they are re-issued from scratch.

    The outcome of an interrupted attempt is unknown; the remote API's
    idempotency makes the re-issue safe.
    """
    async with db.transaction() as session:
        result = await session.execute(
            update(SyncQueueItem)
            .where(SyncQueueItem.status == QueueStatus.IN_FLIGHT)
            .values(status=QueueStatus.PENDING, next_attempt_at=0)
        )
        recovered = int(result.rowcount)  # type: ignore[attr-defined]
    if recovered:
        logger.info("Recovered %d in-flight queue item(s)", recovered)
    return recovered


async def retry_failed(db: LocalDatabase, item_id: int | None = None) -> int:
    """Manually re-arm terminal error items (all of them, or one). Returns how many."""
    async with db.transaction() as session:
        stmt = select(SyncQueueItem).where(SyncQueueItem.status == QueueStatus.ERROR)
        if item_id is not None:
            stmt = stmt.where(SyncQueueItem.id == item_id)
        result = await session.execute(stmt)
        items = list(result.scalars().all())
        for item in items:
            item.status = QueueStatus.PENDING
            item.attempts = 0
            item.last_error = None
            item.next_attempt_at = 0
            record = await session.get(LocalRecord, (item.entity, item.entity_id))
            if record is not None and record.sync_status == SyncStatus.ERROR:
                record.sync_status = SyncStatus.PENDING
    if items:
        logger.info("Re-armed %d failed queue item(s)", len(items))
    return len(items)


async def discard_failed(db: LocalDatabase, item_id: int) -> bool:
    """Drop a terminal error item. Pending and in-flight items are left alone."""
    async with db.transaction() as session:
        result = await session.execute(
            delete(SyncQueueItem).where(
                SyncQueueItem.id == item_id,
                SyncQueueItem.status == QueueStatus.ERROR,
            )
        )
        return bool(result.rowcount)  # type: ignore[attr-defined]


async def next_attempt_at(db: LocalDatabase, entity: str, entity_id: str) -> int | None:
    """Backoff gate of an entity's head item, or None if it has no pending head."""
    async with db.transaction() as session:
        items = await items_for(session, entity, entity_id)
    if not items or items[0].status != QueueStatus.PENDING:
        return None
    return items[0].next_attempt_at
