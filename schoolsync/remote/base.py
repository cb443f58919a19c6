"""Remote API protocol and wire data classes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class RemoteRecord:
    """Authoritative server copy of an entity after a mutation."""

    server_id: str
    version: int
    payload: dict[str, Any] = field(default_factory=dict)
    updated_at: str | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> RemoteRecord:
        return cls(
            server_id=str(data["id"]),
            version=int(data["version"]),
            payload=dict(data.get("payload") or {}),
            updated_at=data.get("updated_at"),
        )


@dataclass
class RemoteChange:
    """One entry of the server change feed."""

    entity: str
    operation: str  # "created", "updated", "deleted"
    record: RemoteRecord


@dataclass
class RemoteChanges:
    server_timestamp: str
    changes: list[RemoteChange] = field(default_factory=list)


@runtime_checkable
class RemoteAPI(Protocol):
    """Server collaborator. Every mutation must be safe to repeat with the same key."""

    async def create(
        self,
        entity: str,
        client_id: str,
        payload: dict[str, Any],
        *,
        version: int,
        idempotency_key: str,
    ) -> RemoteRecord:
        """Create an entity. Repeating a create for ``client_id`` returns the same record."""
        ...

    async def update(
        self,
        entity: str,
        server_id: str,
        payload: dict[str, Any],
        *,
        base_version: int | None,
        version: int,
        idempotency_key: str,
    ) -> RemoteRecord:
        """Apply field changes on top of ``base_version``.

        Raises ``RemoteConflictError`` when the server copy is newer.
        """
        ...

    async def delete(
        self,
        entity: str,
        server_id: str,
        *,
        base_version: int | None,
        idempotency_key: str,
    ) -> None:
        """Delete an entity. Raises ``RemoteNotFoundError`` if it is already gone."""
        ...

    async def fetch_changes(self, since: str | None) -> RemoteChanges:
        """Return server-side changes after ``since`` (ISO timestamp)."""
        ...

    async def close(self) -> None: ...
