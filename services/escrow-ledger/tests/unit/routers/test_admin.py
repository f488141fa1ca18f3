"""Administrative endpoint tests."""

from __future__ import annotations

import pytest


@pytest.fixture
async def disputed(client, auth, seed_task, seed_held_charge):
    """A task whose held charge is under an OPEN dispute."""
    seed_task(status="ASSIGNED")
    charge = await seed_held_charge()
    response = await client.post(
        "/tasks/task-1/dispute",
        json={"reason": "Work not finished"},
        headers=auth("client-token"),
    )
    return {"charge": charge, "dispute": response.json()}


@pytest.mark.unit
class TestReleaseAndRefund:
    async def test_release_disputed_charge(self, client, auth, state, disputed):
        tx_id = disputed["charge"]["tx_id"]

        response = await client.post(
            f"/admin/transactions/{tx_id}/release", headers=auth("admin-token")
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "RELEASED"
        assert data["payout"]["amount"] == 90000
        assert state.store.get_transaction(tx_id)["status"] == "RELEASED"

    async def test_refund_disputed_charge(self, client, auth, state, disputed):
        tx_id = disputed["charge"]["tx_id"]

        response = await client.post(
            f"/admin/transactions/{tx_id}/refund",
            json={"reason": "Steward no-show"},
            headers=auth("admin-token"),
        )

        assert response.status_code == 200
        assert response.json()["refund"]["type"] == "REFUND"
        assert response.json()["refund"]["amount"] == 100000
        assert state.store.get_transaction(tx_id)["status"] == "REFUNDED"

    async def test_release_after_refund_conflicts(self, client, auth, disputed):
        tx_id = disputed["charge"]["tx_id"]
        await client.post(
            f"/admin/transactions/{tx_id}/refund",
            json={"reason": "Steward no-show"},
            headers=auth("admin-token"),
        )

        response = await client.post(
            f"/admin/transactions/{tx_id}/release", headers=auth("admin-token")
        )

        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE_TRANSITION"

    async def test_refund_requires_reason(self, client, auth, disputed):
        tx_id = disputed["charge"]["tx_id"]

        response = await client.post(
            f"/admin/transactions/{tx_id}/refund",
            json={},
            headers=auth("admin-token"),
        )

        assert response.status_code == 400

    async def test_refund_requires_json(self, client, auth, disputed):
        tx_id = disputed["charge"]["tx_id"]

        response = await client.post(
            f"/admin/transactions/{tx_id}/refund",
            content=b"reason=none",
            headers={**auth("admin-token"), "Content-Type": "text/plain"},
        )

        assert response.status_code == 415

    async def test_non_admin_forbidden(self, client, auth, disputed):
        tx_id = disputed["charge"]["tx_id"]

        response = await client.post(
            f"/admin/transactions/{tx_id}/release", headers=auth("client-token")
        )

        assert response.status_code == 403

    async def test_unknown_transaction(self, client, auth):
        response = await client.post(
            "/admin/transactions/tx-nope/release", headers=auth("admin-token")
        )

        assert response.status_code == 404
        assert response.json()["error"] == "TRANSACTION_NOT_FOUND"


@pytest.mark.unit
class TestDisputes:
    async def test_list_and_filter(self, client, auth, disputed):
        everything = await client.get("/admin/disputes", headers=auth("admin-token"))
        resolved = await client.get(
            "/admin/disputes", params={"status": "RESOLVED"}, headers=auth("admin-token")
        )

        listed = [d["dispute_id"] for d in everything.json()["disputes"]]
        assert listed == [disputed["dispute"]["dispute_id"]]
        assert resolved.json()["disputes"] == []

    async def test_resolve_dispute(self, client, auth, state, disputed):
        dispute_id = disputed["dispute"]["dispute_id"]

        response = await client.patch(
            f"/admin/disputes/{dispute_id}",
            json={"status": "resolved", "resolution": "Partial work accepted"},
            headers=auth("admin-token"),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "RESOLVED"
        assert response.json()["resolution"] == "Partial work accepted"
        assert state.store.get_transaction(disputed["charge"]["tx_id"])["status"] == "DISPUTED"

    async def test_invalid_dispute_status(self, client, auth, disputed):
        response = await client.patch(
            f"/admin/disputes/{disputed['dispute']['dispute_id']}",
            json={"status": "OPEN"},
            headers=auth("admin-token"),
        )

        assert response.status_code == 400

    async def test_unknown_dispute(self, client, auth):
        response = await client.patch(
            "/admin/disputes/disp-nope",
            json={"status": "UNDER_REVIEW"},
            headers=auth("admin-token"),
        )

        assert response.status_code == 404
        assert response.json()["error"] == "DISPUTE_NOT_FOUND"


@pytest.mark.unit
class TestFreezeAndCancel:
    async def test_freeze_requires_high_trust(self, client, auth, seed_task, state):
        seed_task(status="ASSIGNED")

        response = await client.post(
            "/admin/tasks/task-1/freeze",
            json={"reason": "Fraud report"},
            headers=auth("admin-medium-token"),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "STEP_UP_REQUIRED"
        assert response.json()["details"]["action"] == "admin_freeze"
        assert state.store.get_task("task-1")["status"] == "ASSIGNED"

    async def test_freeze_keeps_previous_status(self, client, auth, seed_task):
        seed_task(status="ASSIGNED")

        response = await client.post(
            "/admin/tasks/task-1/freeze",
            json={"reason": "Fraud report"},
            headers=auth("admin-token"),
        )

        assert response.status_code == 200
        task = response.json()
        assert task["status"] == "ADMIN_FROZEN"
        assert task["metadata"]["previous_status"] == "ASSIGNED"
        assert task["metadata"]["freeze_reason"] == "Fraud report"

    async def test_cancel_without_body(self, client, auth, seed_task, seed_held_charge, state):
        seed_task(status="ASSIGNED")
        charge = await seed_held_charge()

        response = await client.post("/admin/tasks/task-1/cancel", headers=auth("admin-token"))

        assert response.status_code == 200
        assert response.json()["status"] == "ADMIN_CANCELLED"
        assert state.store.get_transaction(charge["tx_id"])["status"] == "HELD"

    async def test_cancel_twice_conflicts(self, client, auth, seed_task):
        seed_task(status="OPEN")
        await client.post(
            "/admin/tasks/task-1/cancel", json={"reason": "dup"}, headers=auth("admin-token")
        )

        response = await client.post("/admin/tasks/task-1/cancel", headers=auth("admin-token"))

        assert response.status_code == 409


@pytest.mark.unit
class TestSweeps:
    async def test_auto_release_with_hours_query(
        self, client, auth, state, seed_task, seed_held_charge
    ):
        seed_task(status="ASSIGNED")
        charge = await seed_held_charge()
        state.store.update_task("task-1", {"status": "DONE"}, expected_status=None)

        response = await client.post(
            "/admin/escrow/auto-release", params={"hours": 0}, headers=auth("admin-token")
        )

        assert response.status_code == 200
        assert response.json()["threshold_hours"] == 0
        assert response.json()["released"] == 1
        assert state.store.get_transaction(charge["tx_id"])["status"] == "RELEASED"

    async def test_auto_release_default_threshold(
        self, client, auth, seed_task, seed_held_charge, state
    ):
        seed_task(status="ASSIGNED")
        await seed_held_charge()
        state.store.update_task("task-1", {"status": "DONE"}, expected_status=None)

        response = await client.post("/admin/escrow/auto-release", headers=auth("admin-token"))

        assert response.json()["threshold_hours"] == 24
        assert response.json()["released"] == 0

    async def test_auto_release_hours_in_body(self, client, auth):
        response = await client.post(
            "/admin/escrow/auto-release",
            json={"hours": 48},
            headers=auth("admin-token"),
        )

        assert response.json()["threshold_hours"] == 48

    @pytest.mark.parametrize("hours", [-1, "soon", 1.5])
    async def test_auto_release_rejects_bad_hours(self, client, auth, hours):
        response = await client.post(
            "/admin/escrow/auto-release",
            json={"hours": hours},
            headers=auth("admin-token"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PAYLOAD"

    async def test_expiry_sweep(self, client, auth, state, seed_task):
        seed_task(status="OPEN", expires_at="2026-01-01T00:00:00.000000Z")

        response = await client.post("/admin/tasks/expire", headers=auth("admin-token"))

        assert response.status_code == 200
        assert response.json()["expired_task_ids"] == ["task-1"]
        assert state.store.get_task("task-1")["status"] == "EXPIRED"


@pytest.mark.unit
class TestSecurityEvents:
    async def test_events_newest_first_and_filtered(self, client, auth, seed_task, disputed):
        await client.post(
            "/admin/tasks/task-1/freeze",
            json={"reason": "Fraud report"},
            headers=auth("admin-token"),
        )

        everything = await client.get("/admin/security-events", headers=auth("admin-token"))
        disputes = await client.get(
            "/admin/security-events",
            params={"type": "DISPUTE_OPENED"},
            headers=auth("admin-token"),
        )

        assert [event["type"] for event in everything.json()["events"]] == [
            "BOOKING_FROZEN",
            "DISPUTE_OPENED",
        ]
        assert len(disputes.json()["events"]) == 1
        assert disputes.json()["limit"] == 50

    async def test_limit_is_capped(self, client, auth):
        response = await client.get(
            "/admin/security-events",
            params={"limit": 10000},
            headers=auth("admin-token"),
        )

        assert response.json()["limit"] == 200


@pytest.fixture
async def released_payouts(client, auth, seed_task, seed_held_charge):
    """One released task payout for each of stewards s-1 and s-2."""
    payouts = []
    for task_id, steward_id in (("task-1", "s-1"), ("task-2", "s-2")):
        seed_task(task_id, status="ASSIGNED", steward_id=steward_id)
        charge = await seed_held_charge(task_id)
        response = await client.post(
            f"/admin/transactions/{charge['tx_id']}/release", headers=auth("admin-token")
        )
        payouts.append(response.json()["payout"])
    return payouts


@pytest.mark.unit
class TestPayouts:
    async def test_lists_payouts_newest_first(self, client, auth, released_payouts):
        response = await client.get("/admin/payouts", headers=auth("admin-token"))

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [p["tx_id"] for p in data["payouts"]] == [
            released_payouts[1]["tx_id"],
            released_payouts[0]["tx_id"],
        ]
        assert data["payouts"][0]["steward_id"] == "s-2"
        assert data["payouts"][0]["client_id"] == "c-1"
        assert data["payouts"][0]["task_category"] == "CLEANING"

    async def test_filter_by_steward_and_status(self, client, auth, released_payouts):
        steward = await client.get(
            "/admin/payouts", params={"steward_id": "s-1"}, headers=auth("admin-token")
        )
        failed = await client.get(
            "/admin/payouts", params={"status": "failed"}, headers=auth("admin-token")
        )

        assert [p["tx_id"] for p in steward.json()["payouts"]] == [released_payouts[0]["tx_id"]]
        assert steward.json()["total"] == 1
        assert failed.json()["payouts"] == []
        assert failed.json()["total"] == 0

    async def test_pagination_keeps_total(self, client, auth, released_payouts):
        response = await client.get(
            "/admin/payouts",
            params={"limit": 1, "offset": 1},
            headers=auth("admin-token"),
        )

        data = response.json()
        assert [p["tx_id"] for p in data["payouts"]] == [released_payouts[0]["tx_id"]]
        assert data["total"] == 2
        assert (data["limit"], data["offset"]) == (1, 1)

    async def test_includes_withdrawals(self, client, auth, state, released_payouts):
        withdrawal_task = state.store.get_or_create_withdrawal_task("s-1", "UGX")
        state.store.insert_transaction(
            {
                "tx_id": "tx-wdr-1",
                "task_id": withdrawal_task["task_id"],
                "amount": -20000,
                "platform_fee": 600,
                "currency": "UGX",
                "type": "PAYOUT",
                "status": "PENDING",
                "reference": "WDR-1",
                "metadata": [],
            }
        )

        response = await client.get(
            "/admin/payouts",
            params={"steward_id": "s-1", "status": "PENDING"},
            headers=auth("admin-token"),
        )

        payouts = response.json()["payouts"]
        assert [p["tx_id"] for p in payouts] == ["tx-wdr-1"]
        assert payouts[0]["task_category"] == "SYSTEM_WITHDRAWAL"

    async def test_non_admin_forbidden(self, client, auth):
        response = await client.get("/admin/payouts", headers=auth("steward-token"))

        assert response.status_code == 403
