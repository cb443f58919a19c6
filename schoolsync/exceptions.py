"""Engine exception types.

Convention:
- Local errors (``StoreUnavailableError``, ``LocalStorageError``,
  ``RecordNotFoundError``) propagate synchronously to the caller of a mutating
  helper. The mutation is not applied and no queue item is left behind.
- Remote errors are raised by ``RemoteAPI`` implementations and are always
  captured by the sync engine and recorded against the queue item being
  replayed. They never escape the background loop.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from schoolsync.remote.base import RemoteRecord


class SyncEngineError(Exception):
    """Base class for all schoolsync errors."""


class StoreUnavailableError(SyncEngineError):
    """The local store cannot be opened right now (migration running, locked file).

    Callers should retry the write later; nothing was written.
    """


class LocalStorageError(SyncEngineError):
    """The local store failed while applying a mutation (quota, corruption, schema)."""


class RecordNotFoundError(SyncEngineError):
    """A local record addressed by ``(entity, id)`` does not exist."""

    def __init__(self, entity: str, record_id: str) -> None:
        super().__init__(f"{entity} {record_id} not found")
        self.entity = entity
        self.record_id = record_id


class RemoteError(SyncEngineError):
    """Base class for failures reported by the remote API collaborator."""


class TransportError(RemoteError):
    """The request did not complete (network down, timeout, 5xx). Retryable."""


class RemoteConflictError(RemoteError):
    """The server holds a newer version than the one the mutation was based on."""

    def __init__(self, record: RemoteRecord) -> None:
        super().__init__(f"server version {record.version} is newer")
        self.record = record


class RemoteNotFoundError(RemoteError):
    """The server does not know the addressed entity."""


class RemoteRejectedError(RemoteError):
    """The server refused the mutation (validation, permissions). Not retryable."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"rejected ({status_code}): {detail}")
        self.status_code = status_code
        self.detail = detail
