"""Service layer components."""

from escrow_ledger_service.services.escrow_machine import EscrowStateMachine
from escrow_ledger_service.services.ledger_store import LedgerStore
from escrow_ledger_service.services.milestones import MilestoneManager
from escrow_ledger_service.services.reconciliation import GatewayReconciler
from escrow_ledger_service.services.settlement import SettlementScheduler
from escrow_ledger_service.services.wallet import WalletBalanceEngine
from escrow_ledger_service.services.withdrawals import WithdrawalProcessor

__all__ = [
    "EscrowStateMachine",
    "GatewayReconciler",
    "LedgerStore",
    "MilestoneManager",
    "SettlementScheduler",
    "WalletBalanceEngine",
    "WithdrawalProcessor",
]
