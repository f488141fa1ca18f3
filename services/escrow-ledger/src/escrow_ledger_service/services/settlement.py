"""Periodic settlement sweeps: auto-release of stale escrow and task expiry."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from service_commons.exceptions import ServiceError
from starlette.concurrency import run_in_threadpool

from escrow_ledger_service.logging import get_logger
from escrow_ledger_service.services.access import SYSTEM_ACTOR
from escrow_ledger_service.services.ledger_store import to_iso

if TYPE_CHECKING:
    from escrow_ledger_service.clients.gateway_client import GatewayClient
    from escrow_ledger_service.services.escrow_machine import EscrowStateMachine
    from escrow_ledger_service.services.ledger_store import LedgerStore

# Charge statuses that still hold the client's money for an unaccepted task
_EXPIRY_REFUNDABLE_STATUSES = ("HELD", "COMPLETED")


class SettlementScheduler:
    """
    Two idempotent sweeps, safe to re-run and to run alongside user actions.

    Each mutation re-validates its preconditions inside its own write
    transaction; a charge already moved by someone else drops out of the
    next selection.
    """

    def __init__(
        self,
        store: LedgerStore,
        escrow_machine: EscrowStateMachine,
        gateway_client: GatewayClient,
        auto_release_hours: int,
    ) -> None:
        self._store = store
        self._escrow_machine = escrow_machine
        self.gateway_client = gateway_client
        self._auto_release_hours = auto_release_hours
        self._logger = get_logger(__name__)

    def run_auto_release_sweep(
        self,
        hours: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Release HELD charges older than the threshold whose task is DONE.

        Integrity violations and charges that changed underneath the sweep
        are logged and skipped, not retried in the same pass.
        """
        threshold_hours = hours if hours is not None else self._auto_release_hours
        cutoff = to_iso((now or datetime.now(UTC)) - timedelta(hours=threshold_hours))
        candidates = self._store.list_stale_held_charges(cutoff)

        released: list[str] = []
        skipped: list[str] = []
        violations: list[str] = []
        for charge in candidates:
            try:
                self._escrow_machine.auto_release(charge["tx_id"], SYSTEM_ACTOR)
            except ServiceError as exc:
                if exc.error == "ESCROW_INTEGRITY_VIOLATION":
                    violations.append(charge["tx_id"])
                else:
                    skipped.append(charge["tx_id"])
                self._logger.warning(
                    "Auto-release skipped charge",
                    extra={
                        "transaction_id": charge["tx_id"],
                        "task_id": charge["task_id"],
                        "error_code": exc.error,
                    },
                )
                continue
            released.append(charge["tx_id"])

        self._logger.info(
            "Auto-release sweep finished",
            extra={
                "threshold_hours": threshold_hours,
                "candidates": len(candidates),
                "released": len(released),
                "skipped": len(skipped),
                "violations": len(violations),
            },
        )
        return {
            "threshold_hours": threshold_hours,
            "released": len(released),
            "skipped": len(skipped),
            "violations": len(violations),
            "released_transaction_ids": released,
        }

    async def run_expiry_sweep(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Expire OPEN tasks past their expiry and refund any payment they hold.

        The task is marked EXPIRED whether or not its refund succeeded; a
        failed refund is logged and recorded as a REFUND_FAILED security
        event for manual follow-up. Ledger work runs in the threadpool, the
        gateway refund on the loop.
        """
        now_iso = to_iso(now or datetime.now(UTC))
        tasks = await run_in_threadpool(self._store.list_expired_open_tasks, now_iso)

        expired: list[str] = []
        refunded = 0
        refund_failed = 0
        for task in tasks:
            outcome = await self._refund_expired_task(task)
            if outcome == "refunded":
                refunded += 1
            elif outcome == "failed":
                refund_failed += 1

            changed = await run_in_threadpool(
                lambda task_id=task["task_id"]: self._store.update_task(
                    task_id,
                    {"status": "EXPIRED", "is_expired": True},
                    expected_status="OPEN",
                )
            )
            if changed > 0:
                expired.append(task["task_id"])
                self._logger.info(
                    "Task expired",
                    extra={"task_id": task["task_id"], "refund": outcome},
                )

        self._logger.info(
            "Expiry sweep finished",
            extra={
                "candidates": len(tasks),
                "expired": len(expired),
                "refunded": refunded,
                "refund_failed": refund_failed,
            },
        )
        return {
            "expired": len(expired),
            "refunded": refunded,
            "refund_failed": refund_failed,
            "expired_task_ids": expired,
        }

    def _paid_charge(self, task: dict[str, Any]) -> dict[str, Any] | None:
        """The task's paid whole-task charge, or None if it has none."""
        charges = [
            charge
            for charge in self._store.list_task_transactions(task["task_id"], tx_type="CHARGE")
            if charge["milestone_id"] is None and charge["status"] in _EXPIRY_REFUNDABLE_STATUSES
        ]
        if len(charges) == 0:
            return None
        return charges[-1]

    def _record_refund_failure(self, details: dict[str, Any]) -> None:
        self._logger.error("Expiry refund failed", extra=details)
        self._store.insert_security_event(
            "REFUND_FAILED",
            details,
            user_id=SYSTEM_ACTOR.user_id,
            severity="HIGH",
        )

    async def _refund_expired_task(self, task: dict[str, Any]) -> str:
        """Refund the task's paid whole-task charge. Returns refunded, failed or none."""
        charge = await run_in_threadpool(self._paid_charge, task)
        if charge is None:
            return "none"

        try:
            await run_in_threadpool(
                self._escrow_machine.check_refundable, charge["tx_id"], SYSTEM_ACTOR
            )
            if not charge["provider_transaction_id"]:
                raise ServiceError(
                    "GATEWAY_FAILURE",
                    "Charge has no provider transaction id",
                    502,
                    {},
                )
            result = await self.gateway_client.refund_transaction(
                charge["provider_transaction_id"],
                int(charge["amount"]),
                f"Task {task['task_id']} expired before it was accepted",
            )
            refund_id = result.get("id")
            await run_in_threadpool(
                lambda: self._escrow_machine.record_gateway_refund(
                    charge["tx_id"],
                    SYSTEM_ACTOR,
                    provider_refund_id=str(refund_id) if refund_id is not None else None,
                    provider_status=str(result.get("status", "pending")),
                )
            )
        except ServiceError as exc:
            details = {
                "task_id": task["task_id"],
                "transaction_id": charge["tx_id"],
                "error_code": exc.error,
                "error": exc.message,
            }
            await run_in_threadpool(self._record_refund_failure, details)
            return "failed"
        return "refunded"
