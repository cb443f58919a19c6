"""Entity sync endpoints: idempotent create/update/delete plus the change feed."""

from __future__ import annotations

import logging
import re
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from schoolsync.api.deps import get_registry
from schoolsync.services.entity_registry import (
    EntityConflictError,
    EntityNotFoundError,
    EntityRegistry,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/entities", tags=["entities"])

_ENTITY_PATTERN = r"^[A-Za-z][A-Za-z0-9_]{0,63}$"


# ── Schemas ──────────────────────────────────────────


class RecordResponse(BaseModel):
    """Authoritative copy of an entity."""

    id: str
    version: int
    payload: dict[str, Any]
    updated_at: str


class CreateRequest(BaseModel):
    client_id: str | None = Field(default=None, max_length=128)
    payload: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(default=1, ge=1)


class UpdateRequest(BaseModel):
    """Field changes applied on top of ``base_version``."""

    payload: dict[str, Any] = Field(default_factory=dict)
    base_version: int | None = None
    version: int | None = None


class ChangeResponse(BaseModel):
    entity: str
    operation: str
    record: RecordResponse


class ChangesResponse(BaseModel):
    server_timestamp: str
    changes: list[ChangeResponse]


IdempotencyKey = Annotated[str | None, Header(alias="Idempotency-Key", max_length=128)]


def _check_entity(entity: str) -> str:
    if not re.match(_ENTITY_PATTERN, entity):
        raise HTTPException(status_code=400, detail=f"Invalid entity name: {entity}")
    return entity


# ── Endpoints ────────────────────────────────────────


@router.get("/changes", response_model=ChangesResponse)
async def list_changes(
    registry: Annotated[EntityRegistry, Depends(get_registry)],
    since: Annotated[str | None, Query()] = None,
) -> ChangesResponse:
    """Changes recorded after ``since``; pass the returned timestamp next time."""
    try:
        server_timestamp, entries = await registry.changes_since(since)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid since timestamp: {since}") from exc
    return ChangesResponse(
        server_timestamp=server_timestamp,
        changes=[
            ChangeResponse(
                entity=entry.entity,
                operation=entry.operation,
                record=RecordResponse(**entry.record),
            )
            for entry in entries
        ],
    )


@router.post("/{entity}", response_model=RecordResponse, status_code=status.HTTP_201_CREATED)
async def create_entity(
    entity: str,
    body: CreateRequest,
    registry: Annotated[EntityRegistry, Depends(get_registry)],
    idempotency_key: IdempotencyKey = None,
) -> RecordResponse:
    _check_entity(entity)
    record = await registry.create(entity, body.client_id, body.payload, idempotency_key)
    return RecordResponse(**record)


@router.put("/{entity}/{entity_id}", response_model=RecordResponse)
async def update_entity(
    entity: str,
    entity_id: str,
    body: UpdateRequest,
    registry: Annotated[EntityRegistry, Depends(get_registry)],
    idempotency_key: IdempotencyKey = None,
) -> RecordResponse | JSONResponse:
    _check_entity(entity)
    try:
        record = await registry.update(
            entity, entity_id, body.payload, body.base_version, idempotency_key
        )
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except EntityConflictError as exc:
        logger.info("Rejected stale update of %s %s: %s", entity, entity_id, exc)
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc), "record": exc.current},
        )
    return RecordResponse(**record)


@router.delete("/{entity}/{entity_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_entity(
    entity: str,
    entity_id: str,
    registry: Annotated[EntityRegistry, Depends(get_registry)],
    idempotency_key: IdempotencyKey = None,
    base_version: Annotated[int | None, Query()] = None,
) -> Response:
    """Delete an entity. Deletes are unconditional; ``base_version`` is accepted for logging."""
    _check_entity(entity)
    try:
        await registry.delete(entity, entity_id, idempotency_key)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    logger.debug("Delete of %s %s based on v%s", entity, entity_id, base_version)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
