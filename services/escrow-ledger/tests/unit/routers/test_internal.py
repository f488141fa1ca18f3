"""Task mirror endpoint tests."""

from __future__ import annotations

import pytest

TASK_BODY = {
    "client_id": "c-1",
    "steward_id": "s-1",
    "category": "CLEANING",
    "status": "OPEN",
    "agreed_price": 100000,
    "currency": "ugx",
}


@pytest.mark.unit
class TestUpsertTask:
    async def test_admin_mirrors_task(self, client, auth, state):
        response = await client.put(
            "/internal/tasks/task-9",
            json={**TASK_BODY, "expires_at": "2026-11-01T12:00:00+03:00"},
            headers=auth("admin-token"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["task_id"] == "task-9"
        assert data["currency"] == "UGX"
        assert data["expires_at"] == "2026-11-01T09:00:00.000000Z"
        assert state.store.get_task("task-9")["status"] == "OPEN"

    async def test_second_put_updates_status(self, client, auth):
        await client.put("/internal/tasks/task-9", json=TASK_BODY, headers=auth("admin-token"))

        response = await client.put(
            "/internal/tasks/task-9",
            json={**TASK_BODY, "status": "ASSIGNED"},
            headers=auth("admin-token"),
        )

        assert response.json()["status"] == "ASSIGNED"

    async def test_non_admin_forbidden(self, client, auth):
        response = await client.put(
            "/internal/tasks/task-9", json=TASK_BODY, headers=auth("client-token")
        )

        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"

    async def test_missing_token(self, client):
        response = await client.put("/internal/tasks/task-9", json=TASK_BODY)

        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"

    async def test_unknown_token(self, client, auth):
        response = await client.put("/internal/tasks/task-9", json=TASK_BODY, headers=auth("stale"))

        assert response.status_code == 401

    @pytest.mark.parametrize(
        "override",
        [
            {"status": "SOMETHING"},
            {"agreed_price": -1},
            {"currency": "USDT"},
            {"unexpected": True},
            {"expires_at": "next tuesday"},
        ],
    )
    async def test_invalid_body(self, client, auth, override):
        response = await client.put(
            "/internal/tasks/task-9",
            json={**TASK_BODY, **override},
            headers=auth("admin-token"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PAYLOAD"

    async def test_wrong_content_type(self, client, auth):
        response = await client.put(
            "/internal/tasks/task-9",
            content=b"client_id=c-1",
            headers={**auth("admin-token"), "Content-Type": "application/x-www-form-urlencoded"},
        )

        assert response.status_code == 415
        assert response.json()["error"] == "UNSUPPORTED_MEDIA_TYPE"

    async def test_oversized_body(self, client, auth):
        response = await client.put(
            "/internal/tasks/task-9",
            json={**TASK_BODY, "category": "X" * 5000},
            headers=auth("admin-token"),
        )

        assert response.status_code == 413
        assert response.json()["error"] == "PAYLOAD_TOO_LARGE"

    async def test_malformed_json(self, client, auth):
        response = await client.put(
            "/internal/tasks/task-9",
            content=b"{not json",
            headers={**auth("admin-token"), "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_JSON"
