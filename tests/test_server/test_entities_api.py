"""Tests for the reference server's entity sync endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from httpx import AsyncClient

    from schoolsync.services.entity_registry import EntityRegistry


async def _create(
    client: AsyncClient, key: str = "k1", client_id: str = "local_1"
) -> dict[str, Any]:
    resp = await client.post(
        "/api/entities/students",
        json={"client_id": client_id, "payload": {"name": "Ana"}, "version": 1},
        headers={"Idempotency-Key": key},
    )
    assert resp.status_code == 201
    return resp.json()  # type: ignore[no-any-return]


class TestHealth:
    async def test_get(self, client: AsyncClient) -> None:
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_head(self, client: AsyncClient) -> None:
        resp = await client.head("/api/health")
        assert resp.status_code == 200


class TestCreate:
    async def test_create_returns_version_one(self, client: AsyncClient) -> None:
        body = await _create(client)
        assert body["version"] == 1
        assert body["payload"] == {"name": "Ana"}
        assert body["id"]
        assert body["updated_at"]

    async def test_same_idempotency_key_replays(self, client: AsyncClient) -> None:
        first = await _create(client, key="same")
        second = await _create(client, key="same", client_id="local_other")
        assert first == second

    async def test_same_client_id_deduplicates(
        self, client: AsyncClient, registry: EntityRegistry
    ) -> None:
        first = await _create(client, key="k1")
        second = await _create(client, key="k2")
        assert first["id"] == second["id"]
        _, changes = await registry.changes_since(None)
        assert len(changes) == 1

    async def test_invalid_entity_name(self, client: AsyncClient) -> None:
        resp = await client.post("/api/entities/1bad", json={"payload": {}})
        assert resp.status_code == 400


class TestUpdate:
    async def test_update_merges_and_increments(self, client: AsyncClient) -> None:
        created = await _create(client)
        resp = await client.put(
            f"/api/entities/students/{created['id']}",
            json={"payload": {"grade": 4}, "base_version": 1, "version": 2},
            headers={"Idempotency-Key": "u1"},
        )
        assert resp.status_code == 200
        assert resp.json()["version"] == 2
        assert resp.json()["payload"] == {"name": "Ana", "grade": 4}

    async def test_stale_base_version_conflicts(self, client: AsyncClient) -> None:
        created = await _create(client)
        url = f"/api/entities/students/{created['id']}"
        await client.put(url, json={"payload": {"grade": 4}, "base_version": 1})

        resp = await client.put(url, json={"payload": {"grade": 5}, "base_version": 1})

        assert resp.status_code == 409
        body = resp.json()
        assert "detail" in body
        assert body["record"]["version"] == 2
        assert body["record"]["payload"]["grade"] == 4

    async def test_replayed_update_is_not_a_conflict(self, client: AsyncClient) -> None:
        created = await _create(client)
        url = f"/api/entities/students/{created['id']}"
        request = {"payload": {"grade": 4}, "base_version": 1}
        first = await client.put(url, json=request, headers={"Idempotency-Key": "u1"})
        second = await client.put(url, json=request, headers={"Idempotency-Key": "u1"})
        assert second.status_code == 200
        assert second.json() == first.json()

    async def test_unknown_entity_id(self, client: AsyncClient) -> None:
        resp = await client.put(
            "/api/entities/students/nope", json={"payload": {}, "base_version": 1}
        )
        assert resp.status_code == 404


class TestDelete:
    async def test_delete_then_404(self, client: AsyncClient) -> None:
        created = await _create(client)
        url = f"/api/entities/students/{created['id']}"
        assert (await client.delete(url, headers={"Idempotency-Key": "d1"})).status_code == 204
        assert (await client.delete(url, headers={"Idempotency-Key": "d1"})).status_code == 204
        assert (await client.delete(url, headers={"Idempotency-Key": "d2"})).status_code == 404


class TestChanges:
    async def test_feed_is_incremental(self, client: AsyncClient) -> None:
        created = await _create(client)
        first = (await client.get("/api/entities/changes")).json()
        assert [c["operation"] for c in first["changes"]] == ["created"]
        assert first["changes"][0]["record"]["id"] == created["id"]

        await client.put(
            f"/api/entities/students/{created['id']}",
            json={"payload": {"grade": 4}, "base_version": 1},
        )
        second = (
            await client.get(
                "/api/entities/changes", params={"since": first["server_timestamp"]}
            )
        ).json()
        assert [c["operation"] for c in second["changes"]] == ["updated"]

        third = (
            await client.get(
                "/api/entities/changes", params={"since": second["server_timestamp"]}
            )
        ).json()
        assert third["changes"] == []

    async def test_bad_cursor(self, client: AsyncClient) -> None:
        resp = await client.get("/api/entities/changes", params={"since": "not a date"})
        assert resp.status_code == 400
