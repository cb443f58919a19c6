"""Local record model."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from schoolsync.models.base import Base


class SyncStatus(StrEnum):
    """Lifecycle state of a local record."""

    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"
    ERROR = "error"


class LocalRecord(Base):
    """Client-durable copy of a domain entity.

    Every entity type (``student``, ``attendance``...) is a logical table
    partitioned by ``entity``; an entity that was never written simply has no rows.
    """

    __tablename__ = "local_records"

    entity: Mapped[str] = mapped_column(Text, primary_key=True)
    id: Mapped[str] = mapped_column(Text, primary_key=True)
    server_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    sync_status: Mapped[str] = mapped_column(Text, nullable=False, default=SyncStatus.PENDING)
    local_updated_at: Mapped[int] = mapped_column(Integer, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    server_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    server_updated_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_local_records_server_id", "entity", "server_id"),
        Index("idx_local_records_sync_status", "sync_status"),
    )

    def __repr__(self) -> str:
        return (
            f"LocalRecord(entity={self.entity!r}, id={self.id!r}, "
            f"status={self.sync_status!r}, version={self.version})"
        )
