"""Router test fixtures with mocked Identity service and payment gateway."""

from __future__ import annotations

import os
from typing import Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from service_commons.exceptions import ServiceError

from escrow_ledger_service.app import create_app
from escrow_ledger_service.config import clear_settings_cache
from escrow_ledger_service.core.lifespan import lifespan
from escrow_ledger_service.core.state import get_app_state, reset_app_state
from escrow_ledger_service.services.access import Actor

ROUTER_WEBHOOK_SECRET = "whsec-router-test"

# Bearer tokens the mocked Identity service recognises
SESSIONS: dict[str, Actor] = {
    "client-token": Actor(user_id="c-1", role="CLIENT", trust_level="MEDIUM"),
    "other-client-token": Actor(user_id="c-2", role="CLIENT", trust_level="MEDIUM"),
    "steward-token": Actor(user_id="s-1", role="STEWARD", trust_level="HIGH"),
    "steward-medium-token": Actor(user_id="s-1", role="STEWARD", trust_level="MEDIUM"),
    "admin-token": Actor(user_id="admin-1", role="ADMIN", trust_level="HIGH"),
    "admin-medium-token": Actor(user_id="admin-1", role="ADMIN", trust_level="MEDIUM"),
}


async def _verify_token(token: str) -> Actor:
    actor = SESSIONS.get(token)
    if actor is None:
        raise ServiceError("UNAUTHORIZED", "Session token is invalid or expired", 401, {})
    return actor


def _install_gateway(state, gateway_client) -> None:
    """Hand the mocked gateway to every component built by the lifespan."""
    state.gateway_client = gateway_client
    for holder in (
        state.escrow_machine,
        state.milestone_manager,
        state.withdrawal_processor,
        state.settlement,
        state.reconciler,
    ):
        holder.gateway_client = gateway_client


@pytest.fixture
async def app(tmp_path):
    """Create a test app with a temporary database and mocked external services."""
    db_path = tmp_path / "test.db"
    log_dir = tmp_path / "logs"
    config_content = f"""
service:
  name: "escrow-ledger"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8008
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_dir}"
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  verify_path: "/sessions/verify"
  timeout_seconds: 5
gateway:
  base_url: "http://gateway.test/v3"
  secret_key: "FLWSECK_TEST-router"
  webhook_secret_hash: "{ROUTER_WEBHOOK_SECRET}"
  signature_header: "verif-hash"
  redirect_url: "http://test/payments/verify"
  timeout_seconds: 5
escrow:
  platform_fee_bps: 1000
  auto_release_hours: 24
  default_currency: "UGX"
withdrawal:
  minimum_amount: 10000
  fixed_fee: 500
  percentage_fee_bps: 50
  max_fee: 5000
scheduler:
  enabled: false
  auto_release_interval_seconds: 3600
  expiry_interval_seconds: 900
request:
  max_body_size: 4096
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        mock_identity = AsyncMock()
        mock_identity.verify_token = AsyncMock(side_effect=_verify_token)
        mock_identity.close = AsyncMock()
        state.identity_client = mock_identity

        mock_gateway = AsyncMock()
        mock_gateway.create_charge = AsyncMock(return_value="https://checkout.example/pay/xyz")
        mock_gateway.verify_transaction = AsyncMock(return_value={})
        mock_gateway.initiate_transfer = AsyncMock(return_value={"id": 7001, "status": "NEW"})
        mock_gateway.refund_transaction = AsyncMock(
            return_value={"id": 9001, "status": "completed"}
        )
        mock_gateway.close = AsyncMock()
        _install_gateway(state, mock_gateway)

        yield test_app

    reset_app_state()
    clear_settings_cache()
    os.environ.pop("CONFIG_PATH", None)


@pytest.fixture
async def client(app):
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def state(app):
    return get_app_state()


@pytest.fixture
def gateway(state):
    return state.gateway_client


@pytest.fixture
def auth():
    """Build Authorization headers for a known session token."""

    def _auth(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    return _auth


@pytest.fixture
def seed_task(state):
    """Mirror a task straight into the ledger."""

    def _seed(
        task_id: str = "task-1",
        *,
        status: str = "OPEN",
        agreed_price: int = 100000,
        steward_id: str | None = "s-1",
        expires_at: str | None = None,
    ) -> dict[str, Any]:
        return state.store.upsert_task(
            {
                "task_id": task_id,
                "client_id": "c-1",
                "steward_id": steward_id,
                "category": "CLEANING",
                "status": status,
                "agreed_price": agreed_price,
                "currency": "UGX",
                "expires_at": expires_at,
            }
        )

    return _seed


@pytest.fixture
def seed_held_charge(state, gateway):
    """Open a charge through the escrow machine and confirm it into escrow."""

    async def _seed(task_id: str = "task-1") -> dict[str, Any]:
        initiated = await state.escrow_machine.initiate_charge(
            task_id,
            SESSIONS["client-token"],
            {},
        )
        return state.escrow_machine.confirm_held(
            initiated["transaction_id"],
            "flw-router-1",
            "successful",
            "webhook",
        )

    return _seed
