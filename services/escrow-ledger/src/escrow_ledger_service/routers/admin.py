"""Administrative endpoints: escrow overrides, disputes, sweeps and audit."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from service_commons.exceptions import ServiceError
from starlette.concurrency import run_in_threadpool

from escrow_ledger_service.core.state import get_app_state
from escrow_ledger_service.routers.helpers import (
    authenticate,
    optional_str,
    parse_int_query,
    parse_pagination,
    read_json_body,
    require_admin,
    require_str,
    unwrap_step_up,
)

router = APIRouter()


@router.post("/admin/transactions/{transaction_id}/release")
async def release_transaction(transaction_id: str, request: Request) -> dict[str, Any]:
    """Release a held or disputed charge to the steward."""
    actor = await authenticate(request)
    require_admin(actor)

    state = get_app_state()
    if state.escrow_machine is None:
        msg = "Escrow state machine not initialized"
        raise RuntimeError(msg)

    payout = await run_in_threadpool(state.escrow_machine.release, transaction_id, actor)
    return {"transaction_id": transaction_id, "status": "RELEASED", "payout": payout}


@router.post("/admin/transactions/{transaction_id}/refund")
async def refund_transaction(transaction_id: str, request: Request) -> dict[str, Any]:
    """Refund a held or disputed charge to the client."""
    actor = await authenticate(request)
    require_admin(actor)
    data = await read_json_body(request)
    reason = require_str(data, "reason")

    state = get_app_state()
    if state.escrow_machine is None:
        msg = "Escrow state machine not initialized"
        raise RuntimeError(msg)

    refund = await run_in_threadpool(
        state.escrow_machine.refund,
        transaction_id,
        actor,
        reason,
    )
    return {"transaction_id": transaction_id, "status": "REFUNDED", "refund": refund}


@router.post("/admin/tasks/{task_id}/freeze")
async def freeze_task(task_id: str, request: Request) -> dict[str, Any]:
    """Freeze a task. Requires a HIGH trust session."""
    actor = await authenticate(request)
    require_admin(actor)
    data = await read_json_body(request)
    reason = require_str(data, "reason")

    state = get_app_state()
    if state.escrow_machine is None:
        msg = "Escrow state machine not initialized"
        raise RuntimeError(msg)

    result = await run_in_threadpool(state.escrow_machine.admin_freeze, task_id, actor, reason)
    return unwrap_step_up(result)


@router.post("/admin/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> dict[str, Any]:
    """Cancel a task administratively. Requires a HIGH trust session."""
    actor = await authenticate(request)
    require_admin(actor)
    data = await read_json_body(request, allow_empty=True)
    reason = optional_str(data, "reason")

    state = get_app_state()
    if state.escrow_machine is None:
        msg = "Escrow state machine not initialized"
        raise RuntimeError(msg)

    result = await run_in_threadpool(state.escrow_machine.admin_cancel, task_id, actor, reason)
    return unwrap_step_up(result)


@router.get("/admin/disputes")
async def list_disputes(request: Request) -> dict[str, Any]:
    """List disputes, optionally filtered by status."""
    actor = await authenticate(request)
    require_admin(actor)

    state = get_app_state()
    if state.store is None:
        msg = "Ledger not initialized"
        raise RuntimeError(msg)

    disputes = await run_in_threadpool(
        state.store.list_disputes,
        request.query_params.get("status"),
    )
    return {"disputes": disputes}


@router.get("/admin/payouts")
async def list_payouts(request: Request) -> dict[str, Any]:
    """Task payouts and withdrawals, filterable by status and steward."""
    actor = await authenticate(request)
    require_admin(actor)
    limit, offset = parse_pagination(request)
    status = request.query_params.get("status")
    steward_id = request.query_params.get("steward_id")

    state = get_app_state()
    store = state.store
    if store is None:
        msg = "Ledger not initialized"
        raise RuntimeError(msg)

    payouts, total = await run_in_threadpool(
        lambda: store.list_payouts(
            limit=limit,
            offset=offset,
            status=status.upper() if status else None,
            steward_id=steward_id or None,
        )
    )
    return {"payouts": payouts, "total": total, "limit": limit, "offset": offset}


@router.patch("/admin/disputes/{dispute_id}")
async def update_dispute(dispute_id: str, request: Request) -> dict[str, Any]:
    """Move a dispute to UNDER_REVIEW or RESOLVED."""
    actor = await authenticate(request)
    require_admin(actor)
    data = await read_json_body(request)
    status = require_str(data, "status").upper()
    resolution = optional_str(data, "resolution")

    state = get_app_state()
    if state.escrow_machine is None:
        msg = "Escrow state machine not initialized"
        raise RuntimeError(msg)

    return await run_in_threadpool(
        state.escrow_machine.update_dispute,
        dispute_id,
        actor,
        status,
        resolution,
    )


@router.post("/admin/escrow/auto-release")
async def trigger_auto_release(request: Request) -> dict[str, Any]:
    """Run the auto-release sweep now, optionally with a custom threshold."""
    actor = await authenticate(request)
    require_admin(actor)

    hours = parse_int_query(request, "hours", -1, minimum=0)
    if hours < 0:
        data = await read_json_body(request, allow_empty=True)
        raw_hours = data.get("hours")
        if raw_hours is not None and (
            isinstance(raw_hours, bool) or not isinstance(raw_hours, int) or raw_hours < 0
        ):
            raise ServiceError(
                "INVALID_PAYLOAD",
                "hours must be a non-negative integer",
                400,
                {"field": "hours"},
            )
        hours = raw_hours if raw_hours is not None else -1

    state = get_app_state()
    if state.settlement is None:
        msg = "Settlement scheduler not initialized"
        raise RuntimeError(msg)

    return await run_in_threadpool(
        state.settlement.run_auto_release_sweep,
        hours if hours >= 0 else None,
    )


@router.post("/admin/tasks/expire")
async def trigger_expiry(request: Request) -> dict[str, Any]:
    """Run the task expiry sweep now."""
    actor = await authenticate(request)
    require_admin(actor)

    state = get_app_state()
    if state.settlement is None:
        msg = "Settlement scheduler not initialized"
        raise RuntimeError(msg)

    return await state.settlement.run_expiry_sweep()


@router.get("/admin/security-events")
async def list_security_events(request: Request) -> dict[str, Any]:
    """Audit trail, newest first."""
    actor = await authenticate(request)
    require_admin(actor)
    limit, offset = parse_pagination(request)

    state = get_app_state()
    store = state.store
    if store is None:
        msg = "Ledger not initialized"
        raise RuntimeError(msg)

    events = await run_in_threadpool(
        lambda: store.list_security_events(
            event_type=request.query_params.get("type"),
            limit=limit,
            offset=offset,
        )
    )
    return {"events": events, "limit": limit, "offset": offset}
