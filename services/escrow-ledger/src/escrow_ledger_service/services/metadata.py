"""
Typed audit metadata attached to ledger transactions.

A transaction's metadata is an append-only trail: every transition adds
one entry, discriminated by ``kind``. Trails are stored as JSON arrays.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Entry(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ChargeInitiated(_Entry):
    kind: Literal["charge_initiated"] = "charge_initiated"
    initiated_by: str
    at: str


class ChargeConfirmed(_Entry):
    kind: Literal["charge_confirmed"] = "charge_confirmed"
    via: Literal["webhook", "verify"]
    provider_transaction_id: str
    provider_status: str
    at: str
    payment_type: str | None = None


class ChargeFailed(_Entry):
    kind: Literal["charge_failed"] = "charge_failed"
    via: Literal["webhook", "verify", "gateway"]
    reason: str
    at: str


class Released(_Entry):
    kind: Literal["released"] = "released"
    via: Literal["client_confirm", "admin", "auto_release"]
    actor: str
    charge_id: str
    at: str


class Refunded(_Entry):
    kind: Literal["refunded"] = "refunded"
    actor: str
    charge_id: str
    reason: str
    at: str


class MilestonePayout(_Entry):
    kind: Literal["milestone_payout"] = "milestone_payout"
    milestone_id: str
    charge_id: str
    at: str


class WithdrawalRequested(_Entry):
    kind: Literal["withdrawal"] = "withdrawal"
    requested_by: str
    requested_amount: int
    fixed_fee: int
    percentage_fee: int
    total_fee: int
    net_amount: int
    account_bank: str
    account_number: str
    beneficiary_name: str
    provider_status: str
    at: str


class TransferSettled(_Entry):
    kind: Literal["transfer_settled"] = "transfer_settled"
    event: str
    provider_transaction_id: str | None
    provider_status: str
    at: str
    failure_reason: str | None = None


class ExpiryRefund(_Entry):
    kind: Literal["expiry_refund"] = "expiry_refund"
    charge_id: str
    provider_status: str
    at: str


MetadataEntry = Annotated[
    ChargeInitiated
    | ChargeConfirmed
    | ChargeFailed
    | Released
    | Refunded
    | MilestonePayout
    | WithdrawalRequested
    | TransferSettled
    | ExpiryRefund,
    Field(discriminator="kind"),
]

_trail_adapter: TypeAdapter[list[Any]] = TypeAdapter(list[MetadataEntry])


def trail(*entries: _Entry) -> list[dict[str, Any]]:
    """Serialize entries into a new stored trail."""
    return [entry.model_dump(mode="json", exclude_none=True) for entry in entries]


def append_entry(stored: list[dict[str, Any]] | None, entry: _Entry) -> list[dict[str, Any]]:
    """Return the stored trail with one more entry at the end."""
    return [*(stored or []), *trail(entry)]


def parse_trail(stored: list[dict[str, Any]] | None) -> list[MetadataEntry]:
    """Validate a stored trail back into typed entries."""
    return _trail_adapter.validate_python(stored or [])
