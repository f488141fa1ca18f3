"""Completion, dispute and milestone endpoint tests."""

from __future__ import annotations

import pytest


@pytest.mark.unit
class TestConfirmCompletion:
    async def test_client_confirmation_releases_escrow(
        self, client, auth, seed_task, seed_held_charge, state
    ):
        seed_task(status="ASSIGNED")
        charge = await seed_held_charge()
        state.store.update_task("task-1", {"status": "IN_PROGRESS"}, expected_status=None)

        response = await client.post("/tasks/task-1/confirm", headers=auth("client-token"))

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "DONE"
        assert data["payout"]["amount"] == 90000
        assert data["payout"]["type"] == "PAYOUT"
        assert state.store.get_transaction(charge["tx_id"])["status"] == "RELEASED"
        assert state.store.get_task("task-1")["status"] == "DONE"

    async def test_second_confirmation_conflicts(self, client, auth, seed_task, seed_held_charge):
        seed_task(status="ASSIGNED")
        await seed_held_charge()
        await client.post("/tasks/task-1/confirm", headers=auth("client-token"))

        response = await client.post("/tasks/task-1/confirm", headers=auth("client-token"))

        assert response.status_code == 409

    async def test_steward_cannot_confirm(self, client, auth, seed_task, seed_held_charge):
        seed_task(status="ASSIGNED")
        await seed_held_charge()

        response = await client.post("/tasks/task-1/confirm", headers=auth("steward-token"))

        assert response.status_code == 403


@pytest.mark.unit
class TestDispute:
    async def test_dispute_freezes_charge(self, client, auth, seed_task, seed_held_charge, state):
        seed_task(status="ASSIGNED")
        charge = await seed_held_charge()

        response = await client.post(
            "/tasks/task-1/dispute",
            json={"reason": "Steward never arrived"},
            headers=auth("client-token"),
        )

        assert response.status_code == 201
        dispute = response.json()
        assert dispute["status"] == "OPEN"
        assert dispute["transaction_id"] == charge["tx_id"]
        assert state.store.get_transaction(charge["tx_id"])["status"] == "DISPUTED"

    async def test_reason_required(self, client, auth, seed_task):
        seed_task(status="ASSIGNED")

        response = await client.post("/tasks/task-1/dispute", json={}, headers=auth("client-token"))

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PAYLOAD"

    async def test_task_without_charge(self, client, auth, seed_task):
        seed_task(status="ASSIGNED")

        response = await client.post(
            "/tasks/task-1/dispute",
            json={"reason": "late"},
            headers=auth("client-token"),
        )

        assert response.status_code == 409


@pytest.mark.unit
class TestMilestoneEndpoints:
    async def _create(self, client, auth):
        return await client.post(
            "/tasks/task-1/milestones",
            json={
                "milestones": [
                    {"name": "Deposit", "amount": 30000},
                    {"name": "Final", "amount": 70000, "description": "Handover"},
                ]
            },
            headers=auth("client-token"),
        )

    async def test_create_and_list(self, client, auth, seed_task):
        seed_task(status="ASSIGNED")

        created = await self._create(client, auth)
        listed = await client.get("/tasks/task-1/milestones", headers=auth("steward-token"))

        assert created.status_code == 201
        assert [m["name"] for m in created.json()["milestones"]] == ["Deposit", "Final"]
        assert listed.status_code == 200
        assert listed.json()["milestones"] == created.json()["milestones"]

    async def test_create_rejects_malformed_items(self, client, auth, seed_task):
        seed_task(status="ASSIGNED")

        response = await client.post(
            "/tasks/task-1/milestones",
            json={"milestones": [{"amount": 100}]},
            headers=auth("client-token"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PAYLOAD"

    async def test_pay_then_complete(self, client, auth, gateway, seed_task, state):
        seed_task(status="ASSIGNED")
        deposit = (await self._create(client, auth)).json()["milestones"][0]

        paid = await client.post(
            f"/tasks/task-1/milestones/{deposit['milestone_id']}/pay",
            headers=auth("client-token"),
        )
        assert paid.status_code == 201
        tx_id = paid.json()["transaction_id"]
        state.milestone_manager.settle_charge(tx_id, "flw-ms-1", "successful", "webhook")

        completed = await client.post(
            f"/tasks/task-1/milestones/{deposit['milestone_id']}/complete",
            headers=auth("steward-token"),
        )

        assert completed.status_code == 200
        assert completed.json()["status"] == "COMPLETED"
        payouts = state.store.list_task_transactions("task-1", tx_type="PAYOUT")
        assert [p["amount"] for p in payouts] == [27000]

    async def test_pay_passes_customer_details(self, client, auth, gateway, seed_task):
        seed_task(status="ASSIGNED")
        deposit = (await self._create(client, auth)).json()["milestones"][0]

        await client.post(
            f"/tasks/task-1/milestones/{deposit['milestone_id']}/pay",
            json={"customer_email": "client@example.com", "customer_name": "Client One"},
            headers=auth("client-token"),
        )

        customer = gateway.create_charge.await_args.kwargs["customer"]
        assert customer == {"id": "c-1", "email": "client@example.com", "name": "Client One"}

    async def test_unknown_milestone(self, client, auth, seed_task):
        seed_task(status="ASSIGNED")
        await self._create(client, auth)

        response = await client.post(
            "/tasks/task-1/milestones/ms-missing/complete",
            headers=auth("steward-token"),
        )

        assert response.status_code == 404
        assert response.json()["error"] == "MILESTONE_NOT_FOUND"
