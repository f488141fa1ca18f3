"""Payment initiation, verify redirect and webhook endpoint tests."""

from __future__ import annotations

import pytest

# Matches gateway.webhook_secret_hash in the router test config
WEBHOOK_HEADERS = {"verif-hash": "whsec-router-test"}


def _held_count(store, task_id: str) -> int:
    charges = store.list_task_transactions(task_id, tx_type="CHARGE")
    return sum(1 for charge in charges if charge["status"] == "HELD")


def _confirm_payment(gateway, tx_id: str, amount: int = 100000) -> None:
    gateway.verify_transaction.return_value = {
        "status": "successful",
        "tx_ref": tx_id,
        "amount": amount,
        "currency": "UGX",
    }


@pytest.mark.unit
class TestInitiatePayment:
    async def test_client_gets_payment_link(self, client, auth, gateway, seed_task, state):
        seed_task()

        response = await client.post(
            "/payments/initiate",
            json={"task_id": "task-1", "customer_email": "client@example.com"},
            headers=auth("client-token"),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["payment_link"] == "https://checkout.example/pay/xyz"
        assert data["amount"] == 100000
        assert data["platform_fee"] == 10000
        assert data["currency"] == "UGX"
        kwargs = gateway.create_charge.await_args.kwargs
        assert kwargs["tx_ref"] == data["transaction_id"]
        assert kwargs["customer"] == {"id": "c-1", "email": "client@example.com"}
        assert state.store.get_transaction(data["transaction_id"])["status"] == "PENDING"

    async def test_only_task_client_pays(self, client, auth, seed_task):
        seed_task()

        response = await client.post(
            "/payments/initiate",
            json={"task_id": "task-1"},
            headers=auth("other-client-token"),
        )

        assert response.status_code == 403

    async def test_unknown_task(self, client, auth):
        response = await client.post(
            "/payments/initiate",
            json={"task_id": "task-missing"},
            headers=auth("client-token"),
        )

        assert response.status_code == 404
        assert response.json()["error"] == "TASK_NOT_FOUND"

    async def test_task_already_in_escrow(self, client, auth, seed_task, seed_held_charge):
        seed_task(status="ASSIGNED")
        await seed_held_charge()

        response = await client.post(
            "/payments/initiate",
            json={"task_id": "task-1"},
            headers=auth("client-token"),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE_TRANSITION"

    async def test_task_id_required(self, client, auth):
        response = await client.post("/payments/initiate", json={}, headers=auth("client-token"))

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PAYLOAD"

    async def test_requires_authentication(self, client):
        response = await client.post("/payments/initiate", json={"task_id": "task-1"})

        assert response.status_code == 401


@pytest.mark.unit
class TestVerifyRedirect:
    async def test_verified_payment_holds_charge_and_assigns_task(
        self, client, auth, gateway, seed_task, state
    ):
        seed_task()
        initiated = (
            await client.post(
                "/payments/initiate", json={"task_id": "task-1"}, headers=auth("client-token")
            )
        ).json()
        tx_id = initiated["transaction_id"]
        _confirm_payment(gateway, tx_id)

        response = await client.get(
            "/payments/verify",
            params={"tx_ref": tx_id, "transaction_id": "555", "status": "successful"},
        )

        assert response.status_code == 200
        assert response.json()["verified"] is True
        assert response.json()["status"] == "HELD"
        assert state.store.get_task("task-1")["status"] == "ASSIGNED"

    async def test_null_gateway_amount_is_unverified(
        self, client, auth, gateway, seed_task, state
    ):
        seed_task()
        initiated = (
            await client.post(
                "/payments/initiate", json={"task_id": "task-1"}, headers=auth("client-token")
            )
        ).json()
        tx_id = initiated["transaction_id"]
        gateway.verify_transaction.return_value = {
            "status": "successful",
            "tx_ref": tx_id,
            "amount": None,
            "currency": "UGX",
        }

        response = await client.get(
            "/payments/verify",
            params={"tx_ref": tx_id, "transaction_id": "555", "status": "successful"},
        )

        assert response.status_code == 200
        assert response.json()["verified"] is False
        assert state.store.get_transaction(tx_id)["status"] == "PENDING"
        assert state.store.get_task("task-1")["status"] == "OPEN"

    async def test_cancelled_payment(self, client, seed_task, state, auth):
        seed_task()
        initiated = (
            await client.post(
                "/payments/initiate", json={"task_id": "task-1"}, headers=auth("client-token")
            )
        ).json()

        response = await client.get(
            "/payments/verify",
            params={"tx_ref": initiated["transaction_id"], "status": "cancelled"},
        )

        assert response.status_code == 200
        assert response.json()["verified"] is False

    async def test_tx_ref_required(self, client):
        response = await client.get("/payments/verify", params={"status": "successful"})

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PAYLOAD"


@pytest.mark.unit
class TestWebhook:
    async def test_invalid_signature_rejected(self, client, gateway):
        response = await client.post(
            "/payments/webhook",
            json={"event": "charge.completed", "data": {}},
            headers={"verif-hash": "guess"},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"
        gateway.verify_transaction.assert_not_awaited()

    async def test_missing_signature_rejected(self, client):
        response = await client.post("/payments/webhook", json={"event": "charge.completed"})

        assert response.status_code == 401

    async def test_signed_charge_event_holds_funds(self, client, auth, gateway, seed_task, state):
        seed_task()
        initiated = (
            await client.post(
                "/payments/initiate", json={"task_id": "task-1"}, headers=auth("client-token")
            )
        ).json()
        tx_id = initiated["transaction_id"]
        _confirm_payment(gateway, tx_id)
        event = {
            "event": "charge.completed",
            "data": {"id": 555, "tx_ref": tx_id, "status": "successful"},
        }

        first = await client.post("/payments/webhook", json=event, headers=WEBHOOK_HEADERS)
        second = await client.post("/payments/webhook", json=event, headers=WEBHOOK_HEADERS)

        assert first.status_code == 200
        assert first.json() == {"received": True}
        assert second.status_code == 200
        assert state.store.get_transaction(tx_id)["status"] == "HELD"
        assert _held_count(state.store, "task-1") == 1

    async def test_unparseable_body_still_acknowledged(self, client):
        response = await client.post(
            "/payments/webhook",
            content=b"<xml/>",
            headers={**WEBHOOK_HEADERS, "Content-Type": "text/xml"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}

    async def test_processing_failure_still_acknowledged(self, client, gateway, seed_task, state):
        seed_task()
        gateway.verify_transaction.side_effect = RuntimeError("gateway exploded")
        charge = state.store.insert_transaction(
            {
                "tx_id": "tx-webhook",
                "task_id": "task-1",
                "amount": 100000,
                "currency": "UGX",
                "type": "CHARGE",
                "status": "PENDING",
            }
        )
        event = {
            "event": "charge.completed",
            "data": {"id": 1, "tx_ref": charge["tx_id"], "status": "successful"},
        }

        response = await client.post("/payments/webhook", json=event, headers=WEBHOOK_HEADERS)

        assert response.status_code == 200
        assert state.store.get_transaction("tx-webhook")["status"] == "PENDING"
