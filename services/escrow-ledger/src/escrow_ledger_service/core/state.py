"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from escrow_ledger_service.clients.gateway_client import GatewayClient
    from escrow_ledger_service.clients.identity_client import IdentityClient
    from escrow_ledger_service.services.escrow_machine import EscrowStateMachine
    from escrow_ledger_service.services.ledger_store import LedgerStore
    from escrow_ledger_service.services.milestones import MilestoneManager
    from escrow_ledger_service.services.reconciliation import GatewayReconciler
    from escrow_ledger_service.services.settlement import SettlementScheduler
    from escrow_ledger_service.services.wallet import WalletBalanceEngine
    from escrow_ledger_service.services.withdrawals import WithdrawalProcessor


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: LedgerStore | None = None
    identity_client: IdentityClient | None = None
    gateway_client: GatewayClient | None = None
    escrow_machine: EscrowStateMachine | None = None
    milestone_manager: MilestoneManager | None = None
    wallet_engine: WalletBalanceEngine | None = None
    withdrawal_processor: WithdrawalProcessor | None = None
    settlement: SettlementScheduler | None = None
    reconciler: GatewayReconciler | None = None
    scheduler: AsyncIOScheduler | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
