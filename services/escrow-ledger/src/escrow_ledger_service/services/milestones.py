"""Milestone payments: partial charges that settle straight to the steward."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from service_commons.exceptions import ServiceError
from starlette.concurrency import run_in_threadpool

from escrow_ledger_service.logging import get_logger
from escrow_ledger_service.services.access import ROLE_STEWARD
from escrow_ledger_service.services.escrow_machine import (
    invalid_transition,
    load_task,
    load_transaction,
    open_gateway_charge,
)
from escrow_ledger_service.services.fees import compute_platform_fee
from escrow_ledger_service.services.ledger_store import DuplicateMilestonesError, utc_now_iso
from escrow_ledger_service.services.metadata import (
    ChargeConfirmed,
    MilestonePayout,
    append_entry,
    trail,
)

if TYPE_CHECKING:
    from escrow_ledger_service.clients.gateway_client import GatewayClient
    from escrow_ledger_service.services.access import Actor
    from escrow_ledger_service.services.ledger_store import LedgerStore

MILESTONE_EDITABLE_TASK_STATUSES = frozenset({"OPEN", "ASSIGNED"})


class MilestoneManager:
    """
    Creates, pays and completes task milestones.

    Milestone money never enters escrow: a confirmed milestone charge is
    recorded COMPLETED together with a COMPLETED PAYOUT in one commit.
    """

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

    def _load_milestone(self, task_id: str, milestone_id: str) -> dict[str, Any]:
        milestone = self._store.get_milestone(milestone_id)
        if milestone is None or milestone["task_id"] != task_id:
            raise ServiceError(
                "MILESTONE_NOT_FOUND",
                "Milestone not found",
                404,
                {"milestone_id": milestone_id},
            )
        return milestone

    def list_milestones(self, task_id: str) -> list[dict[str, Any]]:
        """Milestones of a task in order."""
        load_task(self._store, task_id)
        return self._store.list_milestones(task_id)

    def create_milestones(
        self,
        task_id: str,
        actor: Actor,
        items: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """
        Split a task's price into ordered milestones.

        Allowed once per task, only while the task is OPEN or ASSIGNED, and
        only if the milestone amounts add up to no more than the agreed price.
        """
        task = load_task(self._store, task_id)
        if not actor.is_admin and task["client_id"] != actor.user_id:
            raise ServiceError("FORBIDDEN", "Only the task's client can add milestones", 403, {})
        if task["status"] not in MILESTONE_EDITABLE_TASK_STATUSES:
            raise invalid_transition(
                f"Cannot add milestones to a task in status {task['status']}",
                task_id=task_id,
            )
        if len(items) == 0:
            raise ServiceError("INVALID_PAYLOAD", "At least one milestone is required", 400, {})

        for item in items:
            if not str(item.get("name", "")).strip():
                raise ServiceError("INVALID_PAYLOAD", "Milestone name is required", 400, {})
            if int(item["amount"]) <= 0:
                raise ServiceError(
                    "INVALID_AMOUNT",
                    "Milestone amount must be a positive integer",
                    400,
                    {},
                )

        agreed_price = int(task["agreed_price"])
        total = sum(int(item["amount"]) for item in items)
        if total > agreed_price:
            raise ServiceError(
                "INVALID_AMOUNT",
                "Milestone amounts exceed the task's agreed price",
                400,
                {"total": total, "agreed_price": agreed_price},
            )

        now = utc_now_iso()
        rows = [
            {
                "milestone_id": self._store.new_id("ms"),
                "task_id": task_id,
                "name": str(item["name"]).strip(),
                "description": item.get("description"),
                "amount": int(item["amount"]),
                "percentage": round(int(item["amount"]) * 100 / agreed_price, 2),
                "position": index + 1,
                "status": "PENDING",
                "due_date": item.get("due_date"),
                "completed_at": None,
                "created_at": now,
            }
            for index, item in enumerate(items)
        ]
        try:
            self._store.insert_milestones(task_id, rows)
        except DuplicateMilestonesError as exc:
            raise invalid_transition(
                "Milestones already exist for this task", task_id=task_id
            ) from exc

        self._logger.info(
            "Milestones created",
            extra={"task_id": task_id, "count": len(rows), "total": total, "actor": actor.user_id},
        )
        return self._store.list_milestones(task_id)

    def _payable_milestone(
        self, task_id: str, milestone_id: str, actor: Actor
    ) -> tuple[dict[str, Any], dict[str, Any], dict[str, Any] | None]:
        task = load_task(self._store, task_id)
        if not actor.is_admin and task["client_id"] != actor.user_id:
            raise ServiceError("FORBIDDEN", "Only the task's client can pay milestones", 403, {})
        milestone = self._load_milestone(task_id, milestone_id)
        if milestone["status"] == "COMPLETED":
            raise invalid_transition("Milestone is already paid", milestone_id=milestone_id)

        existing = self._store.find_milestone_transaction(milestone_id, ("PENDING", "COMPLETED"))
        if existing is not None and existing["status"] == "COMPLETED":
            raise invalid_transition("Milestone is already paid", milestone_id=milestone_id)
        return task, milestone, existing

    async def pay_milestone(
        self,
        task_id: str,
        milestone_id: str,
        actor: Actor,
        customer: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Start payment of one milestone.

        A milestone with a PENDING charge gets a fresh payment link for that
        same charge instead of a second charge.
        """
        task, milestone, existing = await run_in_threadpool(
            self._payable_milestone, task_id, milestone_id, actor
        )

        description = f"Payment for milestone: {milestone['name']}"
        if existing is not None:
            link = await self.gateway_client.create_charge(
                tx_ref=existing["tx_id"],
                amount=int(existing["amount"]),
                currency=existing["currency"],
                redirect_url=self._redirect_url,
                customer={"id": actor.user_id, **customer},
                description=description,
            )
            return {
                "transaction_id": existing["tx_id"],
                "payment_link": link,
                "amount": existing["amount"],
                "platform_fee": existing["platform_fee"],
                "currency": existing["currency"],
            }

        amount = int(milestone["amount"])
        return await open_gateway_charge(
            self._store,
            self.gateway_client,
            task=task,
            amount=amount,
            platform_fee=compute_platform_fee(amount, self._platform_fee_bps),
            actor=actor,
            redirect_url=self._redirect_url,
            customer=customer,
            description=description,
            milestone_id=milestone_id,
        )

    def settle_charge(
        self,
        tx_id: str,
        provider_transaction_id: str,
        provider_status: str,
        via: str,
        payment_type: str | None = None,
    ) -> dict[str, Any]:
        """
        Record a confirmed milestone charge and pay the steward immediately.

        Re-delivery of the confirmation for a COMPLETED charge is a no-op.
        """
        with self._store.atomic():
            charge = load_transaction(self._store, tx_id)
            milestone_id = charge["milestone_id"]
            if charge["type"] != "CHARGE" or milestone_id is None:
                raise invalid_transition("Not a milestone charge", transaction_id=tx_id)
            if charge["status"] == "COMPLETED":
                return charge
            if charge["status"] != "PENDING":
                raise invalid_transition(
                    f"Cannot settle a charge in status {charge['status']}",
                    transaction_id=tx_id,
                )

            now = utc_now_iso()
            confirmed = ChargeConfirmed(
                via=via,  # type: ignore[arg-type]
                provider_transaction_id=provider_transaction_id,
                provider_status=provider_status,
                payment_type=payment_type,
                at=now,
            )
            self._store.update_transaction(
                tx_id,
                {
                    "status": "COMPLETED",
                    "provider_transaction_id": provider_transaction_id,
                    "metadata": append_entry(charge["metadata"], confirmed),
                },
                expected_status="PENDING",
            )
            payout = self._store.insert_transaction(
                {
                    "tx_id": self._store.new_id("tx"),
                    "task_id": charge["task_id"],
                    "milestone_id": milestone_id,
                    "amount": int(charge["amount"]) - int(charge["platform_fee"]),
                    "platform_fee": 0,
                    "currency": charge["currency"],
                    "type": "PAYOUT",
                    "status": "COMPLETED",
                    "metadata": trail(
                        MilestonePayout(milestone_id=milestone_id, charge_id=tx_id, at=now)
                    ),
                }
            )
            self._store.update_milestone(
                milestone_id,
                {"status": "IN_PROGRESS"},
                expected_status="PENDING",
            )
            settled = load_transaction(self._store, tx_id)

        self._logger.info(
            "Milestone charge settled",
            extra={
                "task_id": charge["task_id"],
                "milestone_id": milestone_id,
                "transaction_id": tx_id,
                "payout_id": payout["tx_id"],
                "amount": payout["amount"],
            },
        )
        return settled

    def complete_milestone(self, task_id: str, milestone_id: str, actor: Actor) -> dict[str, Any]:
        """Steward marks a paid milestone as done."""
        task = load_task(self._store, task_id)
        is_task_steward = actor.role == ROLE_STEWARD and task["steward_id"] == actor.user_id
        if not actor.is_admin and not is_task_steward:
            raise ServiceError(
                "FORBIDDEN",
                "Only the task's steward can complete milestones",
                403,
                {},
            )

        with self._store.atomic():
            milestone = self._load_milestone(task_id, milestone_id)
            if milestone["status"] == "COMPLETED":
                raise invalid_transition(
                    "Milestone is already completed", milestone_id=milestone_id
                )
            paid = self._store.find_milestone_transaction(milestone_id, ("COMPLETED",))
            if paid is None:
                raise invalid_transition(
                    "Milestone must be paid before it can be completed",
                    milestone_id=milestone_id,
                )
            self._store.update_milestone(
                milestone_id,
                {"status": "COMPLETED", "completed_at": utc_now_iso()},
                expected_status=milestone["status"],
            )
            completed = self._load_milestone(task_id, milestone_id)

        self._logger.info(
            "Milestone completed",
            extra={"task_id": task_id, "milestone_id": milestone_id, "actor": actor.user_id},
        )
        return completed
