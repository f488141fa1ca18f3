"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter
from starlette.concurrency import run_in_threadpool

from escrow_ledger_service.core.state import get_app_state
from escrow_ledger_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return ledger statistics."""
    state = get_app_state()
    by_status: dict[str, int] = {}
    held_amount = 0
    if state.store is not None:
        by_status = await run_in_threadpool(state.store.count_transactions_by_status)
        held_amount = await run_in_threadpool(state.store.total_held_amount)
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        transactions_by_status=by_status,
        held_amount=held_amount,
    )
