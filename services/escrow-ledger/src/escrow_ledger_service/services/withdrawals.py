"""Steward cash-out: validation, fee computation and transfer bookkeeping."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from service_commons.exceptions import ServiceError
from starlette.concurrency import run_in_threadpool

from escrow_ledger_service.logging import get_logger
from escrow_ledger_service.services.access import (
    ROLE_STEWARD,
    Actor,
    Ok,
    StepUpRequired,
    require_role,
    require_trust_level,
)
from escrow_ledger_service.services.escrow_machine import load_transaction
from escrow_ledger_service.services.fees import WithdrawalFee, compute_withdrawal_fee
from escrow_ledger_service.services.ledger_store import utc_now_iso
from escrow_ledger_service.services.metadata import (
    TransferSettled,
    WithdrawalRequested,
    append_entry,
    trail,
)

if TYPE_CHECKING:
    from escrow_ledger_service.clients.gateway_client import GatewayClient
    from escrow_ledger_service.services.ledger_store import LedgerStore
    from escrow_ledger_service.services.wallet import WalletBalanceEngine

# Provider transfer statuses mapped to ledger statuses; anything else stays PENDING
TRANSFER_STATUS_MAP: dict[str, str] = {
    "SUCCESSFUL": "COMPLETED",
    "SUCCESS": "COMPLETED",
    "COMPLETED": "COMPLETED",
    "FAILED": "FAILED",
    "REVERSED": "FAILED",
}


def next_withdrawal_status(
    withdrawal: dict[str, Any],
    provider_status: str,
) -> str | None:
    """
    Ledger status a transfer event moves the withdrawal to, or None to leave it.

    PENDING follows the provider. A COMPLETED transfer can still be failed or
    reversed. FAILED is final unless the gateway never acknowledged the
    transfer (no provider id), in which case a later success is believed.
    """
    target = TRANSFER_STATUS_MAP.get(provider_status, "PENDING")
    current = withdrawal["status"]
    if current == "PENDING":
        return target
    if current == "COMPLETED" and target == "FAILED":
        return "FAILED"
    if current == "FAILED" and target == "COMPLETED" and not withdrawal["provider_transaction_id"]:
        return "COMPLETED"
    return None


class WithdrawalProcessor:
    """
    Validates withdrawal requests against the derived wallet balance and
    records them as negative-amount PAYOUTs on the steward's withdrawal task.
    """

    def __init__(
        self,
        store: LedgerStore,
        gateway_client: GatewayClient,
        wallet_engine: WalletBalanceEngine,
        *,
        minimum_amount: int,
        fixed_fee: int,
        percentage_fee_bps: int,
        max_fee: int,
    ) -> None:
        self._store = store
        self.gateway_client = gateway_client
        self._wallet = wallet_engine
        self._minimum_amount = minimum_amount
        self._fixed_fee = fixed_fee
        self._percentage_fee_bps = percentage_fee_bps
        self._max_fee = max_fee
        self._logger = get_logger(__name__)

    async def request_withdrawal(
        self,
        actor: Actor,
        *,
        amount: int,
        account_bank: str,
        account_number: str,
        beneficiary_name: str,
        narration: str | None = None,
    ) -> Ok[dict[str, Any]] | StepUpRequired:
        """
        Validate and submit a withdrawal.

        Checks run in this order: steward role, trust level (step-up),
        minimum amount, positive net after fees, sufficient available
        balance, no frozen funds. Nothing is written before all pass.

        Raises:
            ServiceError: FORBIDDEN, INVALID_AMOUNT, BELOW_MINIMUM_WITHDRAWAL,
                          AMOUNT_TOO_SMALL, INSUFFICIENT_BALANCE, FUNDS_FROZEN,
                          GATEWAY_FAILURE
        """
        require_role(actor, ROLE_STEWARD)
        step_up = require_trust_level(actor, "HIGH", "withdrawal")
        if step_up is not None:
            return step_up

        if amount <= 0:
            raise ServiceError("INVALID_AMOUNT", "Amount must be a positive integer", 400, {})
        if amount < self._minimum_amount:
            raise ServiceError(
                "BELOW_MINIMUM_WITHDRAWAL",
                f"Minimum withdrawal is {self._minimum_amount}",
                400,
                {"minimum_amount": self._minimum_amount},
            )

        fee = compute_withdrawal_fee(
            amount,
            fixed_fee=self._fixed_fee,
            percentage_fee_bps=self._percentage_fee_bps,
            max_fee=self._max_fee,
        )
        if fee.net_amount <= 0:
            raise ServiceError(
                "AMOUNT_TOO_SMALL",
                "Amount does not cover the withdrawal fee",
                400,
                {"fee": fee.total_fee},
            )

        row = await run_in_threadpool(
            lambda: self._reserve_withdrawal(
                actor,
                amount=amount,
                fee=fee,
                account_bank=account_bank,
                account_number=account_number,
                beneficiary_name=beneficiary_name,
            )
        )

        tx_id = row["tx_id"]
        try:
            transfer = await self.gateway_client.initiate_transfer(
                account_bank=account_bank,
                account_number=account_number,
                amount=fee.net_amount,
                currency=row["currency"],
                reference=row["reference"],
                narration=narration or "Wallet withdrawal",
                beneficiary_name=beneficiary_name,
            )
        except ServiceError as exc:
            await run_in_threadpool(
                lambda: self._record_initiation(
                    tx_id,
                    provider_transaction_id=None,
                    provider_status="FAILED",
                    failure_reason=exc.message,
                )
            )
            self._logger.warning(
                "Withdrawal transfer failed",
                extra={"transaction_id": tx_id, "steward_id": actor.user_id, "error": exc.message},
            )
            raise

        provider_id = transfer.get("id")
        updated = await run_in_threadpool(
            lambda: self._record_initiation(
                tx_id,
                provider_transaction_id=str(provider_id) if provider_id is not None else None,
                provider_status=str(transfer.get("status", "NEW")).upper(),
                failure_reason=(
                    transfer.get("complete_message")
                    if transfer.get("status") == "FAILED"
                    else None
                ),
            )
        )
        self._logger.info(
            "Withdrawal submitted",
            extra={
                "transaction_id": tx_id,
                "steward_id": actor.user_id,
                "amount": amount,
                "fee": fee.total_fee,
                "net_amount": fee.net_amount,
                "account_number": account_number,
                "status": updated["status"],
            },
        )
        return Ok({**updated, "net_amount": fee.net_amount, "fee": fee.total_fee})

    def _reserve_withdrawal(
        self,
        actor: Actor,
        *,
        amount: int,
        fee: WithdrawalFee,
        account_bank: str,
        account_number: str,
        beneficiary_name: str,
    ) -> dict[str, Any]:
        """Check the balance and write the PENDING payout in one write transaction."""
        with self._store.atomic():
            balance = self._wallet.get_balance(actor.user_id)
            if amount > balance.withdrawable:
                raise ServiceError(
                    "INSUFFICIENT_BALANCE",
                    "Withdrawal exceeds available balance",
                    400,
                    {"available_balance": balance.withdrawable, "requested": amount},
                )
            if balance.frozen_balance != 0:
                raise ServiceError(
                    "FUNDS_FROZEN",
                    "Withdrawals are blocked while funds are frozen by a dispute",
                    400,
                    {"frozen_balance": balance.frozen_balance},
                )

            withdrawal_task = self._store.get_or_create_withdrawal_task(
                actor.user_id,
                balance.currency,
            )
            requested = WithdrawalRequested(
                requested_by=actor.user_id,
                requested_amount=amount,
                fixed_fee=fee.fixed_fee,
                percentage_fee=fee.percentage_fee,
                total_fee=fee.total_fee,
                net_amount=fee.net_amount,
                account_bank=account_bank,
                account_number=account_number,
                beneficiary_name=beneficiary_name,
                provider_status="NEW",
                at=utc_now_iso(),
            )
            return self._store.insert_transaction(
                {
                    "tx_id": self._store.new_id("tx"),
                    "task_id": withdrawal_task["task_id"],
                    "amount": -amount,
                    "platform_fee": fee.total_fee,
                    "currency": balance.currency,
                    "type": "PAYOUT",
                    "status": "PENDING",
                    "reference": self._store.new_id("WDR"),
                    "payment_method": account_bank,
                    "metadata": trail(requested),
                }
            )

    def _record_initiation(
        self,
        tx_id: str,
        *,
        provider_transaction_id: str | None,
        provider_status: str,
        failure_reason: str | None,
    ) -> dict[str, Any]:
        with self._store.atomic():
            withdrawal = load_transaction(self._store, tx_id)
            new_status = next_withdrawal_status(withdrawal, provider_status)
            if new_status is None:
                return withdrawal
            return self._apply_transfer_outcome(
                withdrawal,
                new_status,
                event="initiate_transfer",
                provider_transaction_id=provider_transaction_id,
                provider_status=provider_status,
                failure_reason=failure_reason,
            )

    def _apply_transfer_outcome(
        self,
        withdrawal: dict[str, Any],
        new_status: str,
        *,
        event: str,
        provider_transaction_id: str | None,
        provider_status: str,
        failure_reason: str | None,
    ) -> dict[str, Any]:
        entry = TransferSettled(
            event=event,
            provider_transaction_id=provider_transaction_id,
            provider_status=provider_status,
            failure_reason=failure_reason,
            at=utc_now_iso(),
        )
        updates: dict[str, Any] = {
            "status": new_status,
            "metadata": append_entry(withdrawal["metadata"], entry),
        }
        if provider_transaction_id is not None:
            updates["provider_transaction_id"] = provider_transaction_id
        self._store.update_transaction(
            withdrawal["tx_id"],
            updates,
            expected_status=withdrawal["status"],
        )
        return load_transaction(self._store, withdrawal["tx_id"])

    def settle_transfer(
        self,
        *,
        event: str,
        provider_transaction_id: str | None,
        reference: str | None,
        provider_status: str,
        failure_reason: str | None = None,
    ) -> dict[str, Any] | None:
        """
        Apply a transfer webhook to the matching withdrawal.

        Returns the withdrawal row, or None if no withdrawal matches. Events
        that do not change the withdrawal (replays, a success after a
        confirmed failure) return it untouched.
        """
        with self._store.atomic():
            withdrawal = self._store.find_withdrawal(provider_transaction_id, reference)
            if withdrawal is None:
                return None
            new_status = next_withdrawal_status(withdrawal, provider_status)
            if new_status is None:
                self._logger.info(
                    "Transfer event left withdrawal unchanged",
                    extra={
                        "transaction_id": withdrawal["tx_id"],
                        "event": event,
                        "provider_status": provider_status,
                        "status": withdrawal["status"],
                    },
                )
                return withdrawal
            updated = self._apply_transfer_outcome(
                withdrawal,
                new_status,
                event=event,
                provider_transaction_id=provider_transaction_id,
                provider_status=provider_status,
                failure_reason=failure_reason,
            )

        log = self._logger.warning if withdrawal["status"] == "COMPLETED" else self._logger.info
        log(
            "Withdrawal settled",
            extra={
                "transaction_id": updated["tx_id"],
                "event": event,
                "provider_status": provider_status,
                "previous_status": withdrawal["status"],
                "status": updated["status"],
            },
        )
        return updated
