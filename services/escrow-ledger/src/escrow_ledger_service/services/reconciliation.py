"""
Gateway reconciliation: webhook callbacks and the verify redirect.

Both paths funnel into the same idempotent transitions, so a webhook and
a verify call racing on one charge leave exactly one HELD transition.
"""

from __future__ import annotations

import hmac
import math
from typing import TYPE_CHECKING, Any

from service_commons.exceptions import ServiceError
from starlette.concurrency import run_in_threadpool

from escrow_ledger_service.logging import get_logger
from escrow_ledger_service.services.escrow_machine import load_transaction

if TYPE_CHECKING:
    from escrow_ledger_service.clients.gateway_client import GatewayClient
    from escrow_ledger_service.services.escrow_machine import EscrowStateMachine
    from escrow_ledger_service.services.ledger_store import LedgerStore
    from escrow_ledger_service.services.milestones import MilestoneManager
    from escrow_ledger_service.services.withdrawals import WithdrawalProcessor

CHARGE_SUCCESS_EVENTS = frozenset({"charge.completed", "charge.successful"})
CHARGE_FAILURE_EVENTS = frozenset({"charge.failed"})
TRANSFER_EVENTS = frozenset(
    {"transfer.completed", "transfer.successful", "transfer.failed", "transfer.reversed"}
)
SUCCESSFUL_CHARGE_STATUSES = frozenset({"successful", "completed"})


def _as_number(value: Any) -> float | None:
    """Parse a gateway amount, or None when it is missing or not numeric."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class GatewayReconciler:
    """Translates payment-gateway events into ledger transitions."""

    def __init__(
        self,
        store: LedgerStore,
        escrow_machine: EscrowStateMachine,
        milestone_manager: MilestoneManager,
        withdrawal_processor: WithdrawalProcessor,
        gateway_client: GatewayClient,
        webhook_secret_hash: str,
    ) -> None:
        self._store = store
        self._escrow_machine = escrow_machine
        self._milestones = milestone_manager
        self._withdrawals = withdrawal_processor
        self.gateway_client = gateway_client
        self._webhook_secret_hash = webhook_secret_hash
        self._logger = get_logger(__name__)

    def verify_signature(self, signature: str | None) -> bool:
        """Constant-time comparison of the webhook signature header with the shared secret."""
        if not signature or not self._webhook_secret_hash:
            return False
        return hmac.compare_digest(
            signature.encode("utf-8"),
            self._webhook_secret_hash.encode("utf-8"),
        )

    async def _verified_charge(
        self,
        tx_ref: str,
        provider_transaction_id: str,
    ) -> tuple[dict[str, Any], dict[str, Any] | None]:
        """
        Ask the gateway whether the charge really succeeded.

        Returns the ledger charge and the gateway's record, or None when
        the gateway does not confirm a payment matching the charge.
        """
        charge = await run_in_threadpool(load_transaction, self._store, tx_ref)
        verified = await self.gateway_client.verify_transaction(provider_transaction_id)

        status = str(verified.get("status", "")).lower()
        paid = _as_number(verified.get("amount", charge["amount"]))
        matches = (
            status in SUCCESSFUL_CHARGE_STATUSES
            and str(verified.get("tx_ref", tx_ref)) == tx_ref
            and paid is not None
            and paid >= float(charge["amount"])
            and str(verified.get("currency", charge["currency"])) == charge["currency"]
        )
        if not matches:
            self._logger.warning(
                "Gateway did not confirm charge",
                extra={
                    "transaction_id": tx_ref,
                    "provider_transaction_id": provider_transaction_id,
                    "provider_status": status,
                },
            )
            return charge, None
        return charge, verified

    def _apply_confirmation(
        self,
        charge: dict[str, Any],
        verified: dict[str, Any],
        provider_transaction_id: str,
        via: str,
    ) -> dict[str, Any]:
        payment_type = verified.get("payment_type")
        if charge["milestone_id"] is not None:
            return self._milestones.settle_charge(
                charge["tx_id"],
                provider_transaction_id,
                str(verified.get("status", "successful")),
                via,
                payment_type,
            )
        return self._escrow_machine.confirm_held(
            charge["tx_id"],
            provider_transaction_id,
            str(verified.get("status", "successful")),
            via,
            payment_type,
        )

    def _confirm_and_assign(
        self,
        charge: dict[str, Any],
        verified: dict[str, Any],
        provider_transaction_id: str,
    ) -> dict[str, Any]:
        settled = self._apply_confirmation(charge, verified, provider_transaction_id, "verify")
        if settled["milestone_id"] is None:
            moved = self._store.update_task(
                settled["task_id"],
                {"status": "ASSIGNED"},
                expected_status="OPEN",
            )
            if moved > 0:
                self._logger.info(
                    "Task assigned after payment",
                    extra={"task_id": settled["task_id"], "transaction_id": charge["tx_id"]},
                )
        return settled

    async def handle_event(self, payload: dict[str, Any]) -> str:
        """
        Apply one webhook event. Returns a short outcome label.

        Raises:
            ServiceError: from the underlying transition
        """
        event = str(payload.get("event", "")).lower()
        data = payload.get("data")
        if not isinstance(data, dict):
            return "ignored"

        if event in CHARGE_SUCCESS_EVENTS or event in CHARGE_FAILURE_EVENTS:
            tx_ref = data.get("tx_ref")
            known = None
            if tx_ref:
                known = await run_in_threadpool(self._store.get_transaction, str(tx_ref))
            if known is None:
                self._logger.warning(
                    "Webhook for unknown charge",
                    extra={"event": event, "tx_ref": tx_ref},
                )
                return "unknown_transaction"
            tx_ref = str(tx_ref)
            provider_status = str(data.get("status", "")).lower()

            if event in CHARGE_FAILURE_EVENTS or provider_status == "failed":
                await run_in_threadpool(
                    self._escrow_machine.mark_failed,
                    tx_ref,
                    str(data.get("processor_response") or "Payment failed at gateway"),
                    "webhook",
                )
                return "charge_failed"

            provider_id = str(data.get("id", ""))
            if not provider_id:
                return "ignored"
            charge, verified = await self._verified_charge(tx_ref, provider_id)
            if verified is None:
                return "unverified"
            await run_in_threadpool(
                self._apply_confirmation, charge, verified, provider_id, "webhook"
            )
            return "charge_confirmed"

        if event in TRANSFER_EVENTS:
            provider_id = data.get("id")
            status = str(data.get("status", "")).upper()
            if event == "transfer.failed":
                status = "FAILED"
            elif event == "transfer.reversed":
                status = "REVERSED"
            elif event in ("transfer.completed", "transfer.successful") and not status:
                status = "SUCCESSFUL"

            withdrawal = await run_in_threadpool(
                lambda: self._withdrawals.settle_transfer(
                    event=event,
                    provider_transaction_id=str(provider_id) if provider_id is not None else None,
                    reference=data.get("reference"),
                    provider_status=status,
                    failure_reason=(
                        data.get("complete_message") if status != "SUCCESSFUL" else None
                    ),
                )
            )
            if withdrawal is None:
                self._logger.warning(
                    "Webhook for unknown withdrawal",
                    extra={"event": event, "reference": data.get("reference")},
                )
                return "unknown_transaction"
            return "transfer_settled"

        return "ignored"

    async def process_webhook(self, payload: dict[str, Any]) -> str:
        """
        Apply a webhook event, logging instead of raising on failure.

        The provider must always be acknowledged, or it will retry.
        """
        try:
            outcome = await self.handle_event(payload)
        except ServiceError as exc:
            self._logger.error(
                "Webhook processing failed",
                extra={
                    "event": payload.get("event"),
                    "error_code": exc.error,
                    "error": exc.message,
                },
            )
            return "error"
        except Exception:
            self._logger.exception(
                "Unexpected webhook processing failure",
                extra={"event": payload.get("event")},
            )
            return "error"

        self._logger.info(
            "Webhook processed",
            extra={"event": payload.get("event"), "outcome": outcome},
        )
        return outcome

    async def verify_charge(
        self,
        tx_ref: str,
        provider_transaction_id: str | None,
        callback_status: str | None,
    ) -> dict[str, Any]:
        """
        Poll-and-verify path taken when the payer returns from the gateway.

        A successful whole-task charge moves an OPEN task to ASSIGNED.

        Raises:
            ServiceError: TRANSACTION_NOT_FOUND, INVALID_PAYLOAD, GATEWAY_FAILURE
        """
        if str(callback_status or "").lower() not in SUCCESSFUL_CHARGE_STATUSES:
            return {"verified": False, "transaction_id": tx_ref, "status": "failed"}
        if not provider_transaction_id:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "transaction_id is required to verify a payment",
                400,
                {},
            )

        charge, verified = await self._verified_charge(tx_ref, provider_transaction_id)
        if verified is None:
            return {"verified": False, "transaction_id": tx_ref, "status": charge["status"]}

        settled = await run_in_threadpool(
            self._confirm_and_assign, charge, verified, provider_transaction_id
        )

        return {
            "verified": True,
            "transaction_id": tx_ref,
            "status": settled["status"],
            "task_id": settled["task_id"],
            "milestone_id": settled["milestone_id"],
        }
