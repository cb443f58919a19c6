"""In-memory entity registry backing the reference sync server. State is lost on restart.

Each entity is versioned from 1. Mutations are idempotent twice over: a
repeated ``Idempotency-Key`` replays the stored result, and a repeated CREATE
for the same ``client_id`` returns the entity created the first time.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from schoolsync.services.datetime_service import format_iso, now_utc, parse_datetime

logger = logging.getLogger(__name__)


class EntityNotFoundError(Exception):
    """The addressed entity does not exist or was deleted."""


class EntityConflictError(Exception):
    """The update was based on an older version than the stored one."""

    def __init__(self, current: dict[str, Any]) -> None:
        super().__init__(f"stale base version; server is at v{current['version']}")
        self.current = current


@dataclass
class StoredEntity:
    entity: str
    id: str
    client_id: str | None
    payload: dict[str, Any]
    version: int
    updated_at: datetime
    deleted: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "payload": copy.deepcopy(self.payload),
            "updated_at": format_iso(self.updated_at),
        }


@dataclass
class ChangeEntry:
    changed_at: datetime
    entity: str
    operation: str
    record: dict[str, Any] = field(default_factory=dict)


class EntityRegistry:
    """Versioned entity store with an append-only change feed.

    All mutations run under one ``asyncio.Lock`` so version checks and writes
    cannot interleave.
    """

    def __init__(self) -> None:
        self._entities: dict[tuple[str, str], StoredEntity] = {}
        self._by_client_id: dict[tuple[str, str], str] = {}
        self._responses: dict[str, dict[str, Any] | None] = {}
        self._changes: list[ChangeEntry] = []
        self._last_tick: datetime | None = None
        self._lock = asyncio.Lock()

    def _tick(self) -> datetime:
        """Strictly increasing clock so change-feed cursors never skip an entry."""
        now = now_utc()
        if self._last_tick is not None and now <= self._last_tick:
            now = self._last_tick + timedelta(microseconds=1)
        self._last_tick = now
        return now

    def _log(self, stored: StoredEntity, operation: str) -> None:
        self._changes.append(
            ChangeEntry(
                changed_at=stored.updated_at,
                entity=stored.entity,
                operation=operation,
                record=stored.to_json(),
            )
        )

    def _live(self, entity: str, entity_id: str) -> StoredEntity:
        stored = self._entities.get((entity, entity_id))
        if stored is None or stored.deleted:
            raise EntityNotFoundError(f"{entity} {entity_id} not found")
        return stored

    def get(self, entity: str, entity_id: str) -> dict[str, Any] | None:
        stored = self._entities.get((entity, entity_id))
        if stored is None or stored.deleted:
            return None
        return stored.to_json()

    async def create(
        self,
        entity: str,
        client_id: str | None,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            if idempotency_key is not None and idempotency_key in self._responses:
                replay = self._responses[idempotency_key]
                if replay is not None:
                    return replay
            if client_id is not None and (entity, client_id) in self._by_client_id:
                existing = self._entities[(entity, self._by_client_id[(entity, client_id)])]
                result = existing.to_json()
            else:
                stored = StoredEntity(
                    entity=entity,
                    id=uuid.uuid4().hex,
                    client_id=client_id,
                    payload=copy.deepcopy(payload),
                    version=1,
                    updated_at=self._tick(),
                )
                self._entities[(entity, stored.id)] = stored
                if client_id is not None:
                    self._by_client_id[(entity, client_id)] = stored.id
                self._log(stored, "created")
                logger.info("Created %s %s (client id %s)", entity, stored.id, client_id)
                result = stored.to_json()
            if idempotency_key is not None:
                self._responses[idempotency_key] = result
            return result

    async def update(
        self,
        entity: str,
        entity_id: str,
        changes: dict[str, Any],
        base_version: int | None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Merge ``changes`` into the payload.

        Raises ``EntityConflictError`` unless ``base_version`` equals the
        stored version, and ``EntityNotFoundError`` for unknown ids.
        """
        async with self._lock:
            if idempotency_key is not None and idempotency_key in self._responses:
                replay = self._responses[idempotency_key]
                if replay is not None:
                    return replay
            stored = self._live(entity, entity_id)
            if base_version != stored.version:
                raise EntityConflictError(stored.to_json())
            stored.payload = {**stored.payload, **copy.deepcopy(changes)}
            stored.version += 1
            stored.updated_at = self._tick()
            self._log(stored, "updated")
            result = stored.to_json()
            if idempotency_key is not None:
                self._responses[idempotency_key] = result
            return result

    async def delete(
        self, entity: str, entity_id: str, idempotency_key: str | None = None
    ) -> None:
        async with self._lock:
            if idempotency_key is not None and idempotency_key in self._responses:
                return
            stored = self._live(entity, entity_id)
            stored.deleted = True
            stored.version += 1
            stored.updated_at = self._tick()
            self._log(stored, "deleted")
            if idempotency_key is not None:
                self._responses[idempotency_key] = None
            logger.info("Deleted %s %s", entity, entity_id)

    async def changes_since(self, since: str | None) -> tuple[str, list[ChangeEntry]]:
        """Return ``(server_timestamp, changes)`` recorded strictly after ``since``."""
        async with self._lock:
            cursor = parse_datetime(since) if since else None
            entries = [
                entry
                for entry in self._changes
                if cursor is None or entry.changed_at > cursor
            ]
            server_timestamp = self._tick()
        return format_iso(server_timestamp), entries
