"""Sync queue, conflict log, and sync metadata models."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from schoolsync.models.base import Base


class Operation(StrEnum):
    """Mutation kind replayed against the remote API."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class QueueStatus(StrEnum):
    """State of a queue item. Completed items are deleted, not kept as ``done``."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    ERROR = "error"


class SyncQueueItem(Base):
    """Pending mutation awaiting replay, ordered by ``id``."""

    __tablename__ = "sync_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mutation_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    operation: Mapped[str] = mapped_column(Text, nullable=False)
    entity: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=QueueStatus.PENDING)
    last_attempt_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_attempt_at: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_sync_queue_entity", "entity", "entity_id"),
        Index("idx_sync_queue_status", "status"),
        # Ids are never reused, even after the queue is emptied.
        {"sqlite_autoincrement": True},
    )


class SyncConflict(Base):
    """Append-only audit entry for a detected local/server divergence."""

    __tablename__ = "sync_conflicts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    local_version: Mapped[int] = mapped_column(Integer, nullable=False)
    server_version: Mapped[int] = mapped_column(Integer, nullable=False)
    local_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    server_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    resolution: Mapped[str] = mapped_column(Text, nullable=False)
    detected_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("idx_sync_conflicts_entity", "entity", "entity_id"),)


class SyncMetadata(Base):
    """Key/value bookkeeping for incremental pulls (``last_sync_at`` etc.)."""

    __tablename__ = "sync_metadata"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class SchemaMigration(Base):
    """Applied schema migration."""

    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    applied_at: Mapped[str] = mapped_column(Text, nullable=False)
