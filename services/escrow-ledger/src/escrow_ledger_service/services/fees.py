"""Fee arithmetic on integer currency units."""

from __future__ import annotations

from dataclasses import dataclass

BPS_DENOMINATOR = 10_000


def apply_bps(amount: int, bps: int) -> int:
    """Return ``amount * bps / 10000`` rounded half-up to a whole unit."""
    return (amount * bps + BPS_DENOMINATOR // 2) // BPS_DENOMINATOR


def compute_platform_fee(amount: int, fee_bps: int) -> int:
    """Platform commission taken from a charge when it is released."""
    return apply_bps(amount, fee_bps)


@dataclass(frozen=True)
class WithdrawalFee:
    """Fee breakdown of a withdrawal request."""

    amount: int
    fixed_fee: int
    percentage_fee: int
    total_fee: int

    @property
    def net_amount(self) -> int:
        return self.amount - self.total_fee


def compute_withdrawal_fee(
    amount: int,
    *,
    fixed_fee: int,
    percentage_fee_bps: int,
    max_fee: int,
) -> WithdrawalFee:
    """Fixed fee plus a percentage of the amount, capped at ``max_fee``."""
    percentage_fee = apply_bps(amount, percentage_fee_bps)
    total = min(fixed_fee + percentage_fee, max_fee)
    return WithdrawalFee(
        amount=amount,
        fixed_fee=fixed_fee,
        percentage_fee=percentage_fee,
        total_fee=total,
    )
