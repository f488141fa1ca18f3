"""Steward wallet endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from escrow_ledger_service.core.state import get_app_state
from escrow_ledger_service.routers.helpers import (
    authenticate,
    optional_str,
    parse_pagination,
    read_json_body,
    require_int,
    require_str,
    unwrap_step_up,
)
from escrow_ledger_service.schemas import EarningsResponse, WalletBalanceResponse
from escrow_ledger_service.services.access import ROLE_STEWARD, require_role

router = APIRouter()


@router.get("/wallet/balance", response_model=WalletBalanceResponse)
async def get_balance(request: Request) -> WalletBalanceResponse:
    """Derived balance of the calling steward."""
    actor = await authenticate(request)
    require_role(actor, ROLE_STEWARD)

    state = get_app_state()
    if state.wallet_engine is None:
        msg = "Wallet engine not initialized"
        raise RuntimeError(msg)

    balance = await run_in_threadpool(state.wallet_engine.get_balance, actor.user_id)
    return WalletBalanceResponse(
        available_balance=balance.available_balance,
        pending_balance=balance.pending_balance,
        frozen_balance=balance.frozen_balance,
        total_earnings=balance.total_earnings,
        currency=balance.currency,
    )


@router.get("/wallet/earnings", response_model=EarningsResponse)
async def get_earnings(request: Request) -> EarningsResponse:
    """Lifetime and monthly earnings of the calling steward."""
    actor = await authenticate(request)
    require_role(actor, ROLE_STEWARD)

    state = get_app_state()
    if state.wallet_engine is None:
        msg = "Wallet engine not initialized"
        raise RuntimeError(msg)

    earnings = await run_in_threadpool(state.wallet_engine.get_earnings, actor.user_id)
    return EarningsResponse(**earnings)


@router.get("/wallet/transactions")
async def get_history(request: Request) -> dict[str, Any]:
    """Paginated payout, refund and tip history."""
    actor = await authenticate(request)
    require_role(actor, ROLE_STEWARD)
    limit, offset = parse_pagination(request)
    status = request.query_params.get("status")
    tx_type = request.query_params.get("type")

    state = get_app_state()
    wallet_engine = state.wallet_engine
    if wallet_engine is None:
        msg = "Wallet engine not initialized"
        raise RuntimeError(msg)

    return await run_in_threadpool(
        lambda: wallet_engine.get_history(
            actor.user_id,
            limit=limit,
            offset=offset,
            status=status.upper() if status else None,
            tx_type=tx_type.upper() if tx_type else None,
        )
    )


@router.post("/wallet/withdraw", status_code=201)
async def withdraw(request: Request) -> JSONResponse:
    """Withdraw available funds to a bank account. Requires a HIGH trust session."""
    actor = await authenticate(request)
    data = await read_json_body(request)
    amount = require_int(data, "amount")
    account_bank = require_str(data, "account_bank")
    account_number = require_str(data, "account_number")
    beneficiary_name = require_str(data, "beneficiary_name")
    narration = optional_str(data, "narration")

    state = get_app_state()
    if state.withdrawal_processor is None:
        msg = "Withdrawal processor not initialized"
        raise RuntimeError(msg)

    result = await state.withdrawal_processor.request_withdrawal(
        actor,
        amount=amount,
        account_bank=account_bank,
        account_number=account_number,
        beneficiary_name=beneficiary_name,
        narration=narration,
    )
    return JSONResponse(status_code=201, content=unwrap_step_up(result))
