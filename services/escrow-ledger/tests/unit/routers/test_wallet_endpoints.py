"""Steward wallet endpoint tests."""

from __future__ import annotations

import pytest

WITHDRAWAL = {
    "amount": 50000,
    "account_bank": "044",
    "account_number": "0690000031",
    "beneficiary_name": "Steward One",
}


@pytest.fixture
def earn(state, seed_task):
    """Credit steward s-1 with a COMPLETED payout on a DONE task."""

    def _earn(amount: int) -> None:
        seed_task("task-earned", status="DONE")
        state.store.insert_transaction(
            {
                "tx_id": state.store.new_id("tx"),
                "task_id": "task-earned",
                "amount": amount,
                "currency": "UGX",
                "type": "PAYOUT",
                "status": "COMPLETED",
            }
        )

    return _earn


@pytest.mark.unit
class TestBalance:
    async def test_balance_after_release(self, client, auth, seed_task, seed_held_charge):
        seed_task(status="ASSIGNED")
        await seed_held_charge()
        await client.post("/tasks/task-1/confirm", headers=auth("client-token"))

        response = await client.get("/wallet/balance", headers=auth("steward-token"))

        assert response.status_code == 200
        assert response.json() == {
            "available_balance": 90000,
            "pending_balance": 0,
            "frozen_balance": 0,
            "total_earnings": 90000,
            "currency": "UGX",
        }

    async def test_clients_have_no_wallet(self, client, auth):
        response = await client.get("/wallet/balance", headers=auth("client-token"))

        assert response.status_code == 403

    async def test_earnings_shape(self, client, auth, earn):
        earn(12000)

        response = await client.get("/wallet/earnings", headers=auth("steward-token"))

        assert response.status_code == 200
        data = response.json()
        assert data["total_earnings"] == 12000
        assert data["this_month"] == 12000
        assert data["completed_tasks"] == 1


@pytest.mark.unit
class TestHistory:
    async def test_paginated_history(self, client, auth, earn):
        earn(1000)
        earn(2000)
        earn(3000)

        response = await client.get(
            "/wallet/transactions",
            params={"limit": 2, "offset": 0},
            headers=auth("steward-token"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert data["limit"] == 2
        assert [row["amount"] for row in data["transactions"]] == [3000, 2000]

    async def test_status_filter_is_case_insensitive(self, client, auth, earn):
        earn(1000)

        response = await client.get(
            "/wallet/transactions",
            params={"status": "pending"},
            headers=auth("steward-token"),
        )

        assert response.json()["total"] == 0

    async def test_bad_pagination(self, client, auth):
        response = await client.get(
            "/wallet/transactions",
            params={"limit": "lots"},
            headers=auth("steward-token"),
        )

        assert response.status_code == 400


@pytest.mark.unit
class TestWithdraw:
    async def test_withdrawal_submitted(self, client, auth, gateway, earn):
        earn(60000)

        response = await client.post(
            "/wallet/withdraw", json=WITHDRAWAL, headers=auth("steward-token")
        )

        assert response.status_code == 201
        data = response.json()
        assert data["fee"] == 750
        assert data["net_amount"] == 49250
        assert data["status"] == "PENDING"
        assert gateway.initiate_transfer.await_args.kwargs["amount"] == 49250

    async def test_insufficient_balance(self, client, auth, state, earn):
        earn(15000)

        response = await client.post(
            "/wallet/withdraw",
            json={**WITHDRAWAL, "amount": 20000},
            headers=auth("steward-token"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INSUFFICIENT_BALANCE"
        balance = (await client.get("/wallet/balance", headers=auth("steward-token"))).json()
        assert balance["available_balance"] == 15000

    async def test_medium_trust_must_step_up(self, client, auth, gateway, earn):
        earn(60000)

        response = await client.post(
            "/wallet/withdraw",
            json=WITHDRAWAL,
            headers=auth("steward-medium-token"),
        )

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "STEP_UP_REQUIRED"
        assert body["details"]["requires_reauth"] is True
        assert body["details"]["action"] == "withdrawal"
        gateway.initiate_transfer.assert_not_awaited()

    @pytest.mark.parametrize("amount", ["50000", 500.5, True, None])
    async def test_amount_must_be_integer(self, client, auth, amount):
        response = await client.post(
            "/wallet/withdraw",
            json={**WITHDRAWAL, "amount": amount},
            headers=auth("steward-token"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_AMOUNT"

    async def test_bank_details_required(self, client, auth):
        body = {key: value for key, value in WITHDRAWAL.items() if key != "account_number"}

        response = await client.post("/wallet/withdraw", json=body, headers=auth("steward-token"))

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PAYLOAD"
