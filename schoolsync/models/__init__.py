"""SQLAlchemy ORM models for the schoolsync local store."""

from schoolsync.models.base import Base
from schoolsync.models.record import LocalRecord, SyncStatus
from schoolsync.models.sync import (
    Operation,
    QueueStatus,
    SchemaMigration,
    SyncConflict,
    SyncMetadata,
    SyncQueueItem,
)

__all__ = [
    "Base",
    "LocalRecord",
    "Operation",
    "QueueStatus",
    "SchemaMigration",
    "SyncConflict",
    "SyncMetadata",
    "SyncQueueItem",
    "SyncStatus",
]
