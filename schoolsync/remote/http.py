"""httpx implementation of the remote API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from schoolsync.exceptions import (
    RemoteConflictError,
    RemoteNotFoundError,
    RemoteRejectedError,
    TransportError,
)
from schoolsync.remote.base import RemoteChange, RemoteChanges, RemoteRecord

if TYPE_CHECKING:
    from schoolsync.config import Settings

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


def _detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("detail", data))
    return str(data)


def _parse_record(resp: httpx.Response, key: str | None = None) -> RemoteRecord:
    """Decode a record body (or its ``key`` member); malformed bodies fail the request."""
    try:
        data = resp.json()
        return RemoteRecord.from_json(data[key] if key is not None else data)
    except (ValueError, KeyError, TypeError) as exc:
        raise TransportError(
            f"{resp.request.method} {resp.request.url.path}: malformed response body: {exc!r}"
        ) from exc


class HttpRemoteAPI:
    """Client for the entity sync endpoints under ``/api/entities``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpRemoteAPI:
        headers = {}
        if settings.api_token:
            headers["Authorization"] = f"Bearer {settings.api_token}"
        client = httpx.AsyncClient(
            base_url=settings.server_url.rstrip("/"),
            headers=headers,
            timeout=settings.request_timeout_seconds,
        )
        return cls(client)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> HttpRemoteAPI:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue a request and map failures onto the remote error taxonomy."""
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise TransportError(f"{method} {url} failed: {exc!r}") from exc

        if resp.status_code >= 500:
            raise TransportError(f"{method} {url} returned {resp.status_code}")
        if resp.status_code == 404:
            raise RemoteNotFoundError(f"{method} {url}: {_detail(resp)}")
        if resp.status_code == 409:
            raise RemoteConflictError(_parse_record(resp, "record"))
        if resp.status_code >= 400:
            raise RemoteRejectedError(resp.status_code, _detail(resp))
        return resp

    async def create(
        self,
        entity: str,
        client_id: str,
        payload: dict[str, Any],
        *,
        version: int,
        idempotency_key: str,
    ) -> RemoteRecord:
        resp = await self._send(
            "POST",
            f"/api/entities/{entity}",
            json={"client_id": client_id, "payload": payload, "version": version},
            headers={IDEMPOTENCY_HEADER: idempotency_key},
        )
        return _parse_record(resp)

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
        resp = await self._send(
            "PUT",
            f"/api/entities/{entity}/{server_id}",
            json={"payload": payload, "base_version": base_version, "version": version},
            headers={IDEMPOTENCY_HEADER: idempotency_key},
        )
        return _parse_record(resp)

    async def delete(
        self,
        entity: str,
        server_id: str,
        *,
        base_version: int | None,
        idempotency_key: str,
    ) -> None:
        params = {} if base_version is None else {"base_version": base_version}
        await self._send(
            "DELETE",
            f"/api/entities/{entity}/{server_id}",
            params=params,
            headers={IDEMPOTENCY_HEADER: idempotency_key},
        )

    async def fetch_changes(self, since: str | None) -> RemoteChanges:
        params = {} if since is None else {"since": since}
        resp = await self._send("GET", "/api/entities/changes", params=params)
        try:
            data: dict[str, Any] = resp.json()
            changes = [
                RemoteChange(
                    entity=str(item["entity"]),
                    operation=str(item["operation"]),
                    record=RemoteRecord.from_json(item["record"]),
                )
                for item in data.get("changes", [])
            ]
            return RemoteChanges(server_timestamp=str(data["server_timestamp"]), changes=changes)
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise TransportError(f"GET /api/entities/changes: malformed feed: {exc!r}") from exc
