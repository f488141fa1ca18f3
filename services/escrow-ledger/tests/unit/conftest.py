"""Unit test fixtures: temporary ledger, mocked gateway and wired services."""

from __future__ import annotations

import os
from typing import Any
from unittest.mock import AsyncMock

import pytest

from escrow_ledger_service.config import clear_settings_cache
from escrow_ledger_service.core.state import reset_app_state
from escrow_ledger_service.services.escrow_machine import EscrowStateMachine
from escrow_ledger_service.services.fees import compute_platform_fee
from escrow_ledger_service.services.ledger_store import LedgerStore
from escrow_ledger_service.services.metadata import ChargeInitiated, trail
from escrow_ledger_service.services.milestones import MilestoneManager
from escrow_ledger_service.services.reconciliation import GatewayReconciler
from escrow_ledger_service.services.settlement import SettlementScheduler
from escrow_ledger_service.services.wallet import WalletBalanceEngine
from escrow_ledger_service.services.withdrawals import WithdrawalProcessor

PLATFORM_FEE_BPS = 1000
WEBHOOK_SECRET = "whsec-test"


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()
    os.environ.pop("CONFIG_PATH", None)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "escrow-ledger.db")


@pytest.fixture
def store(db_path):
    ledger = LedgerStore(db_path=db_path)
    yield ledger
    ledger.close()


@pytest.fixture
def gateway():
    """Gateway client double with successful defaults."""
    mock = AsyncMock()
    mock.create_charge = AsyncMock(return_value="https://checkout.example/pay/abc")
    mock.verify_transaction = AsyncMock(return_value={})
    mock.initiate_transfer = AsyncMock(return_value={"id": 7001, "status": "NEW"})
    mock.refund_transaction = AsyncMock(return_value={"id": 9001, "status": "completed"})
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def machine(store, gateway):
    return EscrowStateMachine(
        store=store,
        gateway_client=gateway,
        platform_fee_bps=PLATFORM_FEE_BPS,
        redirect_url="http://test/payments/verify",
    )


@pytest.fixture
def milestones(store, gateway):
    return MilestoneManager(
        store=store,
        gateway_client=gateway,
        platform_fee_bps=PLATFORM_FEE_BPS,
        redirect_url="http://test/payments/verify",
    )


@pytest.fixture
def wallet(store):
    return WalletBalanceEngine(store=store, default_currency="UGX")


@pytest.fixture
def withdrawals(store, gateway, wallet):
    return WithdrawalProcessor(
        store=store,
        gateway_client=gateway,
        wallet_engine=wallet,
        minimum_amount=10000,
        fixed_fee=500,
        percentage_fee_bps=50,
        max_fee=5000,
    )


@pytest.fixture
def settlement(store, machine, gateway):
    return SettlementScheduler(
        store=store,
        escrow_machine=machine,
        gateway_client=gateway,
        auto_release_hours=24,
    )


@pytest.fixture
def reconciler(store, machine, milestones, withdrawals, gateway):
    return GatewayReconciler(
        store=store,
        escrow_machine=machine,
        milestone_manager=milestones,
        withdrawal_processor=withdrawals,
        gateway_client=gateway,
        webhook_secret_hash=WEBHOOK_SECRET,
    )


@pytest.fixture
def make_task(store):
    """Factory that mirrors a task into the ledger."""

    def _make(
        task_id: str = "task-1",
        *,
        client_id: str = "c-1",
        steward_id: str | None = "s-1",
        status: str = "OPEN",
        agreed_price: int = 100000,
        currency: str = "UGX",
        expires_at: str | None = None,
    ) -> dict[str, Any]:
        return store.upsert_task(
            {
                "task_id": task_id,
                "client_id": client_id,
                "steward_id": steward_id,
                "category": "CLEANING",
                "status": status,
                "agreed_price": agreed_price,
                "currency": currency,
                "expires_at": expires_at,
            }
        )

    return _make


@pytest.fixture
def pending_charge(store):
    """Factory that records a PENDING whole-task charge without calling the gateway."""

    def _make(task_id: str = "task-1", amount: int = 100000, **extra: Any) -> dict[str, Any]:
        return store.insert_transaction(
            {
                "tx_id": store.new_id("tx"),
                "task_id": task_id,
                "amount": amount,
                "platform_fee": compute_platform_fee(amount, PLATFORM_FEE_BPS),
                "currency": "UGX",
                "type": "CHARGE",
                "status": "PENDING",
                "payment_method": "gateway",
                "metadata": trail(ChargeInitiated(initiated_by="c-1", at="2026-01-01T00:00:00Z")),
                **extra,
            }
        )

    return _make


@pytest.fixture
def held_charge(pending_charge, machine):
    """Factory that records a charge and confirms it into escrow."""
    counter = {"n": 0}

    def _make(task_id: str = "task-1", amount: int = 100000) -> dict[str, Any]:
        counter["n"] += 1
        charge = pending_charge(task_id, amount)
        return machine.confirm_held(
            charge["tx_id"],
            f"flw-{counter['n']}",
            "successful",
            "webhook",
        )

    return _make
