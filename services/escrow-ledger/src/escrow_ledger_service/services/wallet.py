"""
Steward wallet projection.

There is no stored balance. Every read re-derives the figures from the
steward's PAYOUT rows and the current dispute state.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from escrow_ledger_service.services.ledger_store import parse_iso

if TYPE_CHECKING:
    from collections.abc import Iterable

    from escrow_ledger_service.services.ledger_store import LedgerStore


@dataclass(frozen=True)
class WalletBalance:
    """Derived balance of one steward."""

    available_balance: int
    pending_balance: int
    frozen_balance: int
    total_earnings: int
    currency: str
    # Sum of withdrawals still awaiting the provider (zero or negative)
    pending_withdrawals: int = 0

    @property
    def withdrawable(self) -> int:
        """Available funds not already promised to an in-flight withdrawal."""
        return self.available_balance + self.pending_withdrawals

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_wallet_balance(
    payouts: Iterable[dict[str, Any]],
    disputed_task_ids: set[str],
    currency: str,
) -> WalletBalance:
    """
    Partition PAYOUT amounts into available, pending and frozen buckets.

    Earnings on a task with an OPEN or UNDER_REVIEW dispute are frozen
    whatever their own status. Withdrawals (negative amounts) are never
    frozen. Only positive amounts count towards total earnings.
    """
    available = 0
    pending = 0
    frozen = 0
    total_earnings = 0
    pending_withdrawals = 0

    for payout in payouts:
        amount = int(payout["amount"])
        status = payout["status"]

        if amount < 0:
            if status == "COMPLETED":
                available += amount
            elif status == "PENDING":
                pending += amount
                pending_withdrawals += amount
            continue

        total_earnings += amount
        if payout["task_id"] in disputed_task_ids:
            frozen += amount
        elif status == "COMPLETED":
            available += amount
        elif status == "PENDING":
            pending += amount

    return WalletBalance(
        available_balance=available,
        pending_balance=pending,
        frozen_balance=frozen,
        total_earnings=total_earnings,
        currency=currency,
        pending_withdrawals=pending_withdrawals,
    )


def _month_start(moment: datetime, months_back: int = 0) -> datetime:
    year = moment.year
    month = moment.month - months_back
    while month < 1:
        month += 12
        year -= 1
    return datetime(year, month, 1, tzinfo=UTC)


class WalletBalanceEngine:
    """Read-only wallet views over the ledger."""

    def __init__(self, store: LedgerStore, default_currency: str) -> None:
        self._store = store
        self._default_currency = default_currency

    def _currency(self, steward_id: str) -> str:
        return self._store.get_steward_currency(steward_id) or self._default_currency

    def get_balance(self, steward_id: str) -> WalletBalance:
        """Recompute the steward's balance from the ledger."""
        with self._store.atomic():
            payouts = self._store.list_steward_payouts(steward_id)
            disputed = self._store.list_active_disputed_task_ids(steward_id)
        return compute_wallet_balance(payouts, disputed, self._currency(steward_id))

    def get_earnings(self, steward_id: str, now: datetime | None = None) -> dict[str, Any]:
        """Lifetime, this-month and last-month earnings from COMPLETED payouts."""
        now = now or datetime.now(UTC)
        this_month_start = _month_start(now)
        last_month_start = _month_start(now, months_back=1)

        earnings = [
            payout
            for payout in self._store.list_steward_payouts(steward_id)
            if payout["status"] == "COMPLETED" and int(payout["amount"]) > 0
        ]

        total = 0
        this_month = 0
        last_month = 0
        for payout in earnings:
            amount = int(payout["amount"])
            created_at = parse_iso(payout["created_at"])
            total += amount
            if created_at >= this_month_start:
                this_month += amount
            elif created_at >= last_month_start:
                last_month += amount

        return {
            "total_earnings": total,
            "this_month": this_month,
            "last_month": last_month,
            "total_transactions": len(earnings),
            "completed_tasks": self._store.count_done_tasks(steward_id),
            "currency": self._currency(steward_id),
        }

    def get_history(
        self,
        steward_id: str,
        *,
        limit: int,
        offset: int,
        status: str | None = None,
        tx_type: str | None = None,
    ) -> dict[str, Any]:
        """PAYOUT, REFUND and TIP rows of the steward's tasks, newest first."""
        rows, total = self._store.list_steward_history(
            steward_id,
            limit=limit,
            offset=offset,
            status=status,
            tx_type=tx_type,
        )
        return {"transactions": rows, "total": total, "limit": limit, "offset": offset}
