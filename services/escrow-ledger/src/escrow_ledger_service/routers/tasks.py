"""Client-facing task endpoints: completion, disputes and milestones."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from escrow_ledger_service.core.state import get_app_state
from escrow_ledger_service.routers.helpers import (
    authenticate,
    optional_str,
    parse_model,
    read_json_body,
    require_str,
)
from escrow_ledger_service.schemas import MilestonesCreateRequest

router = APIRouter()


@router.post("/tasks/{task_id}/confirm")
async def confirm_task(task_id: str, request: Request) -> dict[str, Any]:
    """Client confirms completion; the held charge is released to the steward."""
    actor = await authenticate(request)

    state = get_app_state()
    if state.escrow_machine is None:
        msg = "Escrow state machine not initialized"
        raise RuntimeError(msg)

    payout = await run_in_threadpool(state.escrow_machine.confirm_completion, task_id, actor)
    return {"task_id": task_id, "status": "DONE", "payout": payout}


@router.post("/tasks/{task_id}/dispute", status_code=201)
async def dispute_task(task_id: str, request: Request) -> JSONResponse:
    """Dispute the task's held charge."""
    actor = await authenticate(request)
    data = await read_json_body(request)
    reason = require_str(data, "reason")

    state = get_app_state()
    if state.escrow_machine is None:
        msg = "Escrow state machine not initialized"
        raise RuntimeError(msg)

    dispute = await run_in_threadpool(state.escrow_machine.dispute_task, task_id, actor, reason)
    return JSONResponse(status_code=201, content=dispute)


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}/milestones")
async def list_milestones(task_id: str, request: Request) -> dict[str, Any]:
    """List a task's milestones in order."""
    await authenticate(request)

    state = get_app_state()
    if state.milestone_manager is None:
        msg = "Milestone manager not initialized"
        raise RuntimeError(msg)

    milestones = await run_in_threadpool(state.milestone_manager.list_milestones, task_id)
    return {"task_id": task_id, "milestones": milestones}


@router.post("/tasks/{task_id}/milestones", status_code=201)
async def create_milestones(task_id: str, request: Request) -> JSONResponse:
    """Split the task price into milestones."""
    actor = await authenticate(request)
    body = parse_model(await read_json_body(request), MilestonesCreateRequest)

    state = get_app_state()
    if state.milestone_manager is None:
        msg = "Milestone manager not initialized"
        raise RuntimeError(msg)

    milestones = await run_in_threadpool(
        state.milestone_manager.create_milestones,
        task_id,
        actor,
        [item.model_dump() for item in body.milestones],
    )
    return JSONResponse(status_code=201, content={"task_id": task_id, "milestones": milestones})


@router.post("/tasks/{task_id}/milestones/{milestone_id}/pay", status_code=201)
async def pay_milestone(task_id: str, milestone_id: str, request: Request) -> JSONResponse:
    """Start payment for a single milestone."""
    actor = await authenticate(request)
    data = await read_json_body(request, allow_empty=True)
    customer = {
        key: value
        for key, value in (
            ("email", optional_str(data, "customer_email")),
            ("name", optional_str(data, "customer_name")),
        )
        if value is not None
    }

    state = get_app_state()
    if state.milestone_manager is None:
        msg = "Milestone manager not initialized"
        raise RuntimeError(msg)

    result = await state.milestone_manager.pay_milestone(task_id, milestone_id, actor, customer)
    return JSONResponse(status_code=201, content=result)


@router.post("/tasks/{task_id}/milestones/{milestone_id}/complete")
async def complete_milestone(task_id: str, milestone_id: str, request: Request) -> dict[str, Any]:
    """Steward marks a paid milestone as completed."""
    actor = await authenticate(request)

    state = get_app_state()
    if state.milestone_manager is None:
        msg = "Milestone manager not initialized"
        raise RuntimeError(msg)

    return await run_in_threadpool(
        state.milestone_manager.complete_milestone,
        task_id,
        milestone_id,
        actor,
    )
