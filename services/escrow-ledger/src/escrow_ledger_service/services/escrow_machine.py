"""
Escrow state machine for CHARGE transactions.

    PENDING -> HELD -> RELEASED | DISPUTED | REFUNDED
    DISPUTED -> RELEASED | REFUNDED

Every operation that consumes escrowed money re-counts the task's escrowed
charges inside the same write transaction that performs the mutation. A
count other than one aborts the operation, rolls back, and records an
ESCROW_INTEGRITY_VIOLATION security event.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

from service_commons.exceptions import ServiceError
from starlette.concurrency import run_in_threadpool

from escrow_ledger_service.logging import get_logger
from escrow_ledger_service.services.access import (
    Actor,
    Ok,
    StepUpRequired,
    require_trust_level,
)
from escrow_ledger_service.services.fees import compute_platform_fee
from escrow_ledger_service.services.ledger_store import (
    ESCROWED_CHARGE_STATUSES,
    HeldChargeConflictError,
    utc_now_iso,
)
from escrow_ledger_service.services.metadata import (
    ChargeConfirmed,
    ChargeFailed,
    ChargeInitiated,
    ExpiryRefund,
    Refunded,
    Released,
    append_entry,
    parse_trail,
    trail,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from escrow_ledger_service.clients.gateway_client import GatewayClient
    from escrow_ledger_service.services.ledger_store import LedgerStore

T = TypeVar("T")

PAYABLE_TASK_STATUSES = frozenset({"OPEN", "ASSIGNED"})
CONFIRMABLE_TASK_STATUSES = frozenset({"ASSIGNED", "IN_PROGRESS", "DONE"})
# Charge statuses a replayed confirmation treats as already done
CONFIRMED_CHARGE_STATUSES = frozenset({"HELD", "DISPUTED", "RELEASED", "REFUNDED"})
DISPUTE_UPDATE_STATUSES = frozenset({"UNDER_REVIEW", "RESOLVED"})


class EscrowIntegrityViolation(Exception):
    """A task's escrowed-charge count differs from what an operation requires."""

    def __init__(self, task_id: str, charge_id: str, escrowed_count: int) -> None:
        super().__init__(
            f"Task {task_id} has {escrowed_count} escrowed charges (charge {charge_id})"
        )
        self.task_id = task_id
        self.charge_id = charge_id
        self.escrowed_count = escrowed_count


def invalid_transition(message: str, **details: Any) -> ServiceError:
    return ServiceError("INVALID_STATE_TRANSITION", message, 409, details)


def load_task(store: LedgerStore, task_id: str) -> dict[str, Any]:
    task = store.get_task(task_id)
    if task is None:
        raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
    return task


def load_transaction(store: LedgerStore, tx_id: str) -> dict[str, Any]:
    tx = store.get_transaction(tx_id)
    if tx is None:
        raise ServiceError(
            "TRANSACTION_NOT_FOUND",
            "Transaction not found",
            404,
            {"transaction_id": tx_id},
        )
    return tx


def _insert_pending_charge(
    store: LedgerStore,
    *,
    task: dict[str, Any],
    amount: int,
    platform_fee: int,
    actor: Actor,
    milestone_id: str | None,
) -> str:
    tx_id = store.new_id("tx")
    store.insert_transaction(
        {
            "tx_id": tx_id,
            "task_id": task["task_id"],
            "milestone_id": milestone_id,
            "amount": amount,
            "platform_fee": platform_fee,
            "currency": task["currency"],
            "type": "CHARGE",
            "status": "PENDING",
            "payment_method": "gateway",
            "metadata": trail(ChargeInitiated(initiated_by=actor.user_id, at=utc_now_iso())),
        }
    )
    return tx_id


def _fail_pending_charge(store: LedgerStore, tx_id: str, reason: str) -> None:
    with store.atomic():
        charge = load_transaction(store, tx_id)
        store.update_transaction(
            tx_id,
            {
                "status": "FAILED",
                "metadata": append_entry(
                    charge["metadata"],
                    ChargeFailed(via="gateway", reason=reason, at=utc_now_iso()),
                ),
            },
            expected_status="PENDING",
        )


async def open_gateway_charge(
    store: LedgerStore,
    gateway_client: GatewayClient,
    *,
    task: dict[str, Any],
    amount: int,
    platform_fee: int,
    actor: Actor,
    redirect_url: str,
    customer: dict[str, Any],
    description: str,
    milestone_id: str | None = None,
) -> dict[str, Any]:
    """
    Record a PENDING charge and ask the gateway for a hosted payment link.

    The transaction id doubles as the gateway's idempotency reference.
    A gateway failure marks the charge FAILED and re-raises GATEWAY_FAILURE.
    Ledger reads and writes run in the threadpool.
    """
    logger = get_logger(__name__)
    tx_id = await run_in_threadpool(
        lambda: _insert_pending_charge(
            store,
            task=task,
            amount=amount,
            platform_fee=platform_fee,
            actor=actor,
            milestone_id=milestone_id,
        )
    )

    try:
        link = await gateway_client.create_charge(
            tx_ref=tx_id,
            amount=amount,
            currency=task["currency"],
            redirect_url=redirect_url,
            customer={"id": actor.user_id, **customer},
            description=description,
        )
    except ServiceError as exc:
        await run_in_threadpool(_fail_pending_charge, store, tx_id, exc.message)
        logger.warning(
            "Charge initiation failed at gateway",
            extra={"task_id": task["task_id"], "transaction_id": tx_id, "error": exc.message},
        )
        raise

    logger.info(
        "Charge initiated",
        extra={
            "task_id": task["task_id"],
            "transaction_id": tx_id,
            "milestone_id": milestone_id,
            "amount": amount,
            "actor": actor.user_id,
        },
    )
    return {
        "transaction_id": tx_id,
        "payment_link": link,
        "amount": amount,
        "platform_fee": platform_fee,
        "currency": task["currency"],
    }


class EscrowStateMachine:
    """Legal transitions of whole-task CHARGE transactions and their companion records."""

    def __init__(
        self,
        store: LedgerStore,
        gateway_client: GatewayClient,
        platform_fee_bps: int,
        redirect_url: str,
    ) -> None:
        self._store = store
        self.gateway_client = gateway_client
        self._platform_fee_bps = platform_fee_bps
        self._redirect_url = redirect_url
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Integrity guard
    # ------------------------------------------------------------------

    def _assert_single_escrowed_charge(self, task_id: str, charge_id: str) -> None:
        count = self._store.count_escrowed_charges(task_id)
        if count != 1:
            raise EscrowIntegrityViolation(task_id, charge_id, count)

    def _guarded(self, operation: str, actor_id: str, apply: Callable[[], T]) -> T:
        """Run ``apply`` in one write transaction, reporting integrity violations."""
        try:
            with self._store.atomic():
                return apply()
        except EscrowIntegrityViolation as exc:
            self._report_violation(
                operation, actor_id, exc.task_id, exc.charge_id, exc.escrowed_count
            )
            raise ServiceError(
                "ESCROW_INTEGRITY_VIOLATION",
                "Escrow integrity check failed; no funds were moved",
                409,
                {"task_id": exc.task_id, "transaction_id": exc.charge_id},
            ) from exc
        except HeldChargeConflictError as exc:
            self._report_violation(operation, actor_id, None, None, None)
            raise ServiceError(
                "ESCROW_INTEGRITY_VIOLATION",
                "Escrow integrity check failed; no funds were moved",
                409,
                {},
            ) from exc

    def _report_violation(
        self,
        operation: str,
        actor_id: str,
        task_id: str | None,
        charge_id: str | None,
        escrowed_count: int | None,
    ) -> None:
        details = {
            "operation": operation,
            "task_id": task_id,
            "transaction_id": charge_id,
            "escrowed_charge_count": escrowed_count,
        }
        self._logger.error("Escrow integrity violation", extra=details)
        self._store.insert_security_event(
            "ESCROW_INTEGRITY_VIOLATION",
            details,
            user_id=actor_id,
            severity="CRITICAL",
        )

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise ServiceError("FORBIDDEN", "Admin role required", 403, {})

    def _load_charge(self, tx_id: str) -> dict[str, Any]:
        charge = load_transaction(self._store, tx_id)
        if charge["type"] != "CHARGE":
            raise invalid_transition(
                f"Transaction is a {charge['type']}, not a CHARGE",
                transaction_id=tx_id,
            )
        return charge

    # ------------------------------------------------------------------
    # Charge lifecycle
    # ------------------------------------------------------------------

    def _payable_task(self, task_id: str, actor: Actor) -> dict[str, Any]:
        task = load_task(self._store, task_id)
        if task["client_id"] != actor.user_id:
            raise ServiceError("FORBIDDEN", "Only the task's client can pay for it", 403, {})
        if task["status"] not in PAYABLE_TASK_STATUSES:
            raise invalid_transition(
                f"Cannot pay for a task in status {task['status']}",
                task_id=task_id,
            )
        if self._store.count_escrowed_charges(task_id) > 0:
            raise invalid_transition("Task already has funds in escrow", task_id=task_id)
        if int(task["agreed_price"]) <= 0:
            raise ServiceError("INVALID_AMOUNT", "Task has no payable price", 400, {})
        return task

    async def initiate_charge(
        self,
        task_id: str,
        actor: Actor,
        customer: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Open a PENDING charge for the task's agreed price.

        Raises:
            ServiceError: TASK_NOT_FOUND, FORBIDDEN, INVALID_STATE_TRANSITION,
                          INVALID_AMOUNT, GATEWAY_FAILURE
        """
        task = await run_in_threadpool(self._payable_task, task_id, actor)
        amount = int(task["agreed_price"])

        return await open_gateway_charge(
            self._store,
            self.gateway_client,
            task=task,
            amount=amount,
            platform_fee=compute_platform_fee(amount, self._platform_fee_bps),
            actor=actor,
            redirect_url=self._redirect_url,
            customer=customer,
            description=f"Payment for task {task_id}",
        )

    def confirm_held(
        self,
        tx_id: str,
        provider_transaction_id: str,
        provider_status: str,
        via: str,
        payment_type: str | None = None,
    ) -> dict[str, Any]:
        """
        Move a PENDING charge to HELD after the gateway confirmed it.

        A charge that was already confirmed is returned unchanged, so a
        replayed webhook or a verify call racing the webhook both succeed.
        """

        def apply() -> tuple[dict[str, Any], bool]:
            charge = self._load_charge(tx_id)
            if charge["milestone_id"] is not None:
                raise invalid_transition(
                    "Milestone charges settle without escrow",
                    transaction_id=tx_id,
                )
            if charge["status"] in CONFIRMED_CHARGE_STATUSES:
                return charge, False
            if charge["status"] != "PENDING":
                raise invalid_transition(
                    f"Cannot hold a charge in status {charge['status']}",
                    transaction_id=tx_id,
                )

            escrowed = self._store.count_escrowed_charges(charge["task_id"])
            if escrowed != 0:
                raise EscrowIntegrityViolation(charge["task_id"], tx_id, escrowed)

            entry = ChargeConfirmed(
                via=via,  # type: ignore[arg-type]
                provider_transaction_id=provider_transaction_id,
                provider_status=provider_status,
                payment_type=payment_type,
                at=utc_now_iso(),
            )
            self._store.update_transaction(
                tx_id,
                {
                    "status": "HELD",
                    "provider_transaction_id": provider_transaction_id,
                    "metadata": append_entry(charge["metadata"], entry),
                },
                expected_status="PENDING",
            )
            return load_transaction(self._store, tx_id), True

        charge, changed = self._guarded("confirm_held", "gateway", apply)
        if changed:
            self._logger.info(
                "Charge held in escrow",
                extra={
                    "task_id": charge["task_id"],
                    "transaction_id": tx_id,
                    "provider_transaction_id": provider_transaction_id,
                    "via": via,
                },
            )
        return charge

    def mark_failed(self, tx_id: str, reason: str, via: str) -> dict[str, Any]:
        """Mark a PENDING charge FAILED. Charges past PENDING are left alone."""
        with self._store.atomic():
            charge = self._load_charge(tx_id)
            if charge["status"] != "PENDING":
                return charge
            self._store.update_transaction(
                tx_id,
                {
                    "status": "FAILED",
                    "metadata": append_entry(
                        charge["metadata"],
                        ChargeFailed(
                            via=via, reason=reason, at=utc_now_iso()  # type: ignore[arg-type]
                        ),
                    ),
                },
                expected_status="PENDING",
            )
            charge = load_transaction(self._store, tx_id)
        self._logger.info(
            "Charge marked failed",
            extra={"task_id": charge["task_id"], "transaction_id": tx_id, "reason": reason},
        )
        return charge

    def _release_charge(self, charge: dict[str, Any], actor_id: str, via: str) -> dict[str, Any]:
        """Release effects; must run inside an atomic block."""
        if charge["status"] not in ESCROWED_CHARGE_STATUSES:
            raise invalid_transition(
                f"Cannot release a charge in status {charge['status']}",
                transaction_id=charge["tx_id"],
            )
        self._assert_single_escrowed_charge(charge["task_id"], charge["tx_id"])

        entry = Released(
            via=via,  # type: ignore[arg-type]
            actor=actor_id,
            charge_id=charge["tx_id"],
            at=utc_now_iso(),
        )
        updated = self._store.update_transaction(
            charge["tx_id"],
            {"status": "RELEASED", "metadata": append_entry(charge["metadata"], entry)},
            expected_status=charge["status"],
        )
        if updated == 0:
            raise invalid_transition("Charge changed concurrently", transaction_id=charge["tx_id"])

        return self._store.insert_transaction(
            {
                "tx_id": self._store.new_id("tx"),
                "task_id": charge["task_id"],
                "amount": int(charge["amount"]) - int(charge["platform_fee"]),
                "platform_fee": 0,
                "currency": charge["currency"],
                "type": "PAYOUT",
                "status": "COMPLETED",
                "metadata": trail(entry),
            }
        )

    def _log_release(self, payout: dict[str, Any]) -> None:
        released = next(
            entry for entry in parse_trail(payout["metadata"]) if isinstance(entry, Released)
        )
        self._logger.info(
            "Escrow released",
            extra={
                "task_id": payout["task_id"],
                "transaction_id": released.charge_id,
                "payout_id": payout["tx_id"],
                "amount": payout["amount"],
                "actor": released.actor,
                "via": released.via,
            },
        )

    def release(self, tx_id: str, actor: Actor) -> dict[str, Any]:
        """
        Release an escrowed charge to the steward and return the new PAYOUT.

        Raises:
            ServiceError: FORBIDDEN, TRANSACTION_NOT_FOUND, INVALID_STATE_TRANSITION,
                          ESCROW_INTEGRITY_VIOLATION
        """
        self._require_admin(actor)
        payout = self._guarded(
            "release",
            actor.user_id,
            lambda: self._release_charge(self._load_charge(tx_id), actor.user_id, "admin"),
        )
        self._log_release(payout)
        return payout

    def confirm_completion(self, task_id: str, actor: Actor) -> dict[str, Any]:
        """
        Client confirms the work is done: release the held charge and mark the task DONE.

        Raises:
            ServiceError: TASK_NOT_FOUND, FORBIDDEN, INVALID_STATE_TRANSITION,
                          ESCROW_INTEGRITY_VIOLATION
        """

        def apply() -> dict[str, Any]:
            task = load_task(self._store, task_id)
            if not actor.is_admin and task["client_id"] != actor.user_id:
                raise ServiceError("FORBIDDEN", "Only the task's client can confirm it", 403, {})
            if task["status"] not in CONFIRMABLE_TASK_STATUSES:
                raise invalid_transition(
                    f"Cannot confirm a task in status {task['status']}",
                    task_id=task_id,
                )
            held = self._store.list_task_transactions(task_id, tx_type="CHARGE", status="HELD")
            if len(held) == 0:
                raise invalid_transition("Task has no held charge to release", task_id=task_id)

            payout = self._release_charge(held[0], actor.user_id, "client_confirm")
            self._store.update_task(
                task_id,
                {"status": "DONE", "actual_end": task["actual_end"] or utc_now_iso()},
                expected_status=task["status"],
            )
            return payout

        payout = self._guarded("confirm_completion", actor.user_id, apply)
        self._log_release(payout)
        return payout

    def auto_release(self, tx_id: str, actor: Actor) -> dict[str, Any]:
        """
        Release path used by the settlement sweep.

        Re-checks inside the write transaction that the charge is still
        HELD and its task still DONE, since either may have changed since
        the sweep selected it.
        """

        def apply() -> dict[str, Any]:
            charge = self._load_charge(tx_id)
            if charge["status"] != "HELD":
                raise invalid_transition(
                    f"Charge left HELD (now {charge['status']})",
                    transaction_id=tx_id,
                )
            task = load_task(self._store, charge["task_id"])
            if task["status"] != "DONE":
                raise invalid_transition(
                    f"Task is no longer DONE (now {task['status']})",
                    task_id=task["task_id"],
                )
            return self._release_charge(charge, actor.user_id, "auto_release")

        payout = self._guarded("auto_release", actor.user_id, apply)
        self._log_release(payout)
        return payout

    def check_refundable(self, tx_id: str, actor: Actor) -> dict[str, Any]:
        """
        Validate, without mutating, that a whole-task charge may be refunded.

        HELD charges must pass the integrity check. Used before an external
        refund call so the gateway is never asked to move money the ledger
        would refuse to record.
        """

        def apply() -> dict[str, Any]:
            charge = self._load_charge(tx_id)
            if charge["status"] not in ("HELD", "COMPLETED") or charge["milestone_id"] is not None:
                raise invalid_transition(
                    f"Cannot refund a charge in status {charge['status']}",
                    transaction_id=tx_id,
                )
            if charge["status"] == "HELD":
                self._assert_single_escrowed_charge(charge["task_id"], tx_id)
            return charge

        return self._guarded("expiry_refund", actor.user_id, apply)

    def record_gateway_refund(
        self,
        tx_id: str,
        actor: Actor,
        *,
        provider_refund_id: str | None,
        provider_status: str,
    ) -> dict[str, Any]:
        """
        Book a refund the gateway has already accepted: charge REFUNDED plus a REFUND row.

        The REFUND is COMPLETED when the provider reports a completed refund
        and PENDING otherwise.
        """

        def apply() -> dict[str, Any]:
            charge = self._load_charge(tx_id)
            if charge["status"] not in ("HELD", "COMPLETED"):
                raise invalid_transition(
                    f"Cannot refund a charge in status {charge['status']}",
                    transaction_id=tx_id,
                )
            if charge["status"] == "HELD":
                self._assert_single_escrowed_charge(charge["task_id"], tx_id)

            entry = ExpiryRefund(charge_id=tx_id, provider_status=provider_status, at=utc_now_iso())
            updated = self._store.update_transaction(
                tx_id,
                {"status": "REFUNDED", "metadata": append_entry(charge["metadata"], entry)},
                expected_status=charge["status"],
            )
            if updated == 0:
                raise invalid_transition("Charge changed concurrently", transaction_id=tx_id)

            completed = provider_status.lower() in ("completed", "successful", "success")
            return self._store.insert_transaction(
                {
                    "tx_id": self._store.new_id("tx"),
                    "task_id": charge["task_id"],
                    "amount": int(charge["amount"]),
                    "platform_fee": int(charge["platform_fee"]),
                    "currency": charge["currency"],
                    "type": "REFUND",
                    "status": "COMPLETED" if completed else "PENDING",
                    "provider_transaction_id": provider_refund_id,
                    "metadata": trail(entry),
                }
            )

        refund = self._guarded("expiry_refund", actor.user_id, apply)
        self._logger.info(
            "Gateway refund recorded",
            extra={
                "task_id": refund["task_id"],
                "transaction_id": tx_id,
                "refund_id": refund["tx_id"],
                "status": refund["status"],
                "actor": actor.user_id,
            },
        )
        return refund

    def refund(self, tx_id: str, actor: Actor, reason: str) -> dict[str, Any]:
        """
        Return an escrowed charge to the client and record a REFUND.

        Raises:
            ServiceError: FORBIDDEN, TRANSACTION_NOT_FOUND, INVALID_STATE_TRANSITION,
                          ESCROW_INTEGRITY_VIOLATION
        """
        self._require_admin(actor)

        def apply() -> dict[str, Any]:
            charge = self._load_charge(tx_id)
            if charge["status"] not in ESCROWED_CHARGE_STATUSES:
                raise invalid_transition(
                    f"Cannot refund a charge in status {charge['status']}",
                    transaction_id=tx_id,
                )
            self._assert_single_escrowed_charge(charge["task_id"], tx_id)

            entry = Refunded(actor=actor.user_id, charge_id=tx_id, reason=reason, at=utc_now_iso())
            updated = self._store.update_transaction(
                tx_id,
                {"status": "REFUNDED", "metadata": append_entry(charge["metadata"], entry)},
                expected_status=charge["status"],
            )
            if updated == 0:
                raise invalid_transition("Charge changed concurrently", transaction_id=tx_id)

            return self._store.insert_transaction(
                {
                    "tx_id": self._store.new_id("tx"),
                    "task_id": charge["task_id"],
                    "amount": int(charge["amount"]),
                    "platform_fee": int(charge["platform_fee"]),
                    "currency": charge["currency"],
                    "type": "REFUND",
                    "status": "COMPLETED",
                    "provider_transaction_id": charge["provider_transaction_id"],
                    "metadata": trail(entry),
                }
            )

        refund = self._guarded("refund", actor.user_id, apply)
        self._logger.info(
            "Escrow refunded",
            extra={
                "task_id": refund["task_id"],
                "transaction_id": tx_id,
                "refund_id": refund["tx_id"],
                "amount": refund["amount"],
                "actor": actor.user_id,
            },
        )
        return refund

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def dispute(self, tx_id: str, actor: Actor, reason: str) -> dict[str, Any]:
        """
        Freeze a HELD charge under an OPEN dispute.

        Raises:
            ServiceError: TRANSACTION_NOT_FOUND, FORBIDDEN, INVALID_STATE_TRANSITION,
                          ESCROW_INTEGRITY_VIOLATION
        """

        def apply() -> dict[str, Any]:
            charge = self._load_charge(tx_id)
            task = load_task(self._store, charge["task_id"])
            if not actor.is_admin and task["client_id"] != actor.user_id:
                raise ServiceError("FORBIDDEN", "Only the task's client can dispute it", 403, {})
            if charge["status"] != "HELD":
                raise invalid_transition(
                    f"Cannot dispute a charge in status {charge['status']}",
                    transaction_id=tx_id,
                )
            self._assert_single_escrowed_charge(charge["task_id"], tx_id)
            if self._store.get_active_dispute(charge["task_id"]) is not None:
                raise invalid_transition(
                    "Task already has an active dispute", task_id=task["task_id"]
                )

            self._store.update_transaction(tx_id, {"status": "DISPUTED"}, expected_status="HELD")
            self._store.update_task(task["task_id"], {"status": "DISPUTED"}, expected_status=None)
            dispute = self._store.insert_dispute(
                {
                    "dispute_id": self._store.new_id("disp"),
                    "task_id": task["task_id"],
                    "transaction_id": tx_id,
                    "raised_by": actor.user_id,
                    "reason": reason,
                    "status": "OPEN",
                }
            )
            self._store.insert_security_event(
                "DISPUTE_OPENED",
                {
                    "task_id": task["task_id"],
                    "transaction_id": tx_id,
                    "dispute_id": dispute["dispute_id"],
                    "reason": reason,
                },
                user_id=actor.user_id,
                severity="MEDIUM",
            )
            return dispute

        dispute = self._guarded("dispute", actor.user_id, apply)
        self._logger.info(
            "Dispute opened",
            extra={
                "task_id": dispute["task_id"],
                "transaction_id": tx_id,
                "dispute_id": dispute["dispute_id"],
                "actor": actor.user_id,
            },
        )
        return dispute

    def dispute_task(self, task_id: str, actor: Actor, reason: str) -> dict[str, Any]:
        """Dispute the task's whole-task charge, preferring one still in escrow."""
        load_task(self._store, task_id)
        charges = [
            charge
            for charge in self._store.list_task_transactions(task_id, tx_type="CHARGE")
            if charge["milestone_id"] is None
        ]
        if len(charges) == 0:
            raise invalid_transition("Task has no charge to dispute", task_id=task_id)

        escrowed = [c for c in charges if c["status"] in ESCROWED_CHARGE_STATUSES]
        target = escrowed[0] if escrowed else charges[-1]
        return self.dispute(target["tx_id"], actor, reason)

    def update_dispute(
        self,
        dispute_id: str,
        actor: Actor,
        status: str,
        resolution: str | None,
    ) -> dict[str, Any]:
        """
        Move a dispute to UNDER_REVIEW or RESOLVED.

        The disputed charge is not touched; money only moves through an
        explicit release or refund.
        """
        self._require_admin(actor)
        if status not in DISPUTE_UPDATE_STATUSES:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Dispute status must be one of {sorted(DISPUTE_UPDATE_STATUSES)}",
                400,
                {},
            )

        with self._store.atomic():
            dispute = self._store.get_dispute(dispute_id)
            if dispute is None:
                raise ServiceError(
                    "DISPUTE_NOT_FOUND",
                    "Dispute not found",
                    404,
                    {"dispute_id": dispute_id},
                )
            if dispute["status"] == "RESOLVED":
                raise invalid_transition("Dispute is already resolved", dispute_id=dispute_id)

            updates: dict[str, Any] = {"status": status}
            if resolution is not None:
                updates["resolution"] = resolution
            self._store.update_dispute(dispute_id, updates)
            updated = self._store.get_dispute(dispute_id)

        if updated is None:
            msg = f"Dispute {dispute_id} not found after update"
            raise RuntimeError(msg)
        self._logger.info(
            "Dispute updated",
            extra={"dispute_id": dispute_id, "status": status, "actor": actor.user_id},
        )
        return updated

    # ------------------------------------------------------------------
    # Administrative overrides (task status only, never money)
    # ------------------------------------------------------------------

    def admin_freeze(
        self,
        task_id: str,
        actor: Actor,
        reason: str,
    ) -> Ok[dict[str, Any]] | StepUpRequired:
        """
        Freeze a task. The pre-freeze status is kept in task metadata.

        Escrow is not touched; disposing of held money afterwards is a
        separate release or refund.
        """
        self._require_admin(actor)
        step_up = require_trust_level(actor, "HIGH", "admin_freeze")
        if step_up is not None:
            return step_up

        with self._store.atomic():
            task = load_task(self._store, task_id)
            if task["status"] in ("ADMIN_FROZEN", "ADMIN_CANCELLED"):
                raise invalid_transition(
                    f"Cannot freeze a task in status {task['status']}",
                    task_id=task_id,
                )
            metadata = {
                **task["metadata"],
                "previous_status": task["status"],
                "frozen_by": actor.user_id,
                "freeze_reason": reason,
                "frozen_at": utc_now_iso(),
            }
            self._store.update_task(
                task_id,
                {"status": "ADMIN_FROZEN", "metadata": metadata},
                expected_status=task["status"],
            )
            self._store.insert_security_event(
                "BOOKING_FROZEN",
                {"task_id": task_id, "previous_status": task["status"], "reason": reason},
                user_id=actor.user_id,
                severity="HIGH",
            )
            frozen = load_task(self._store, task_id)

        self._logger.info(
            "Task frozen by admin",
            extra={"task_id": task_id, "previous_status": task["status"], "actor": actor.user_id},
        )
        return Ok(frozen)

    def admin_cancel(
        self,
        task_id: str,
        actor: Actor,
        reason: str | None = None,
    ) -> Ok[dict[str, Any]] | StepUpRequired:
        """Cancel a task administratively without moving escrowed money."""
        self._require_admin(actor)
        step_up = require_trust_level(actor, "HIGH", "admin_cancel")
        if step_up is not None:
            return step_up

        with self._store.atomic():
            task = load_task(self._store, task_id)
            if task["status"] in ("ADMIN_CANCELLED", "CANCELLED"):
                raise invalid_transition(
                    f"Cannot cancel a task in status {task['status']}",
                    task_id=task_id,
                )
            metadata = {
                **task["metadata"],
                "previous_status": task["status"],
                "cancelled_by": actor.user_id,
                "cancel_reason": reason,
                "cancelled_at": utc_now_iso(),
            }
            self._store.update_task(
                task_id,
                {"status": "ADMIN_CANCELLED", "metadata": metadata},
                expected_status=task["status"],
            )
            self._store.insert_security_event(
                "BOOKING_ADMIN_CANCELLED",
                {"task_id": task_id, "previous_status": task["status"], "reason": reason},
                user_id=actor.user_id,
                severity="HIGH",
            )
            cancelled = load_task(self._store, task_id)

        self._logger.info(
            "Task cancelled by admin",
            extra={"task_id": task_id, "previous_status": task["status"], "actor": actor.user_id},
        )
        return Ok(cancelled)
