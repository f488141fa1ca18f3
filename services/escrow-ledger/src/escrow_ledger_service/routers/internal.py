"""Task mirror endpoint used by the booking workflow."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from service_commons.exceptions import ServiceError
from starlette.concurrency import run_in_threadpool

from escrow_ledger_service.core.state import get_app_state
from escrow_ledger_service.logging import get_logger
from escrow_ledger_service.routers.helpers import (
    authenticate,
    parse_model,
    read_json_body,
    require_admin,
)
from escrow_ledger_service.schemas import TaskMirrorRequest
from escrow_ledger_service.services.ledger_store import parse_iso, to_iso

router = APIRouter()


@router.put("/internal/tasks/{task_id}")
async def upsert_task(task_id: str, request: Request) -> dict[str, Any]:
    """Register or update the ledger's copy of a task."""
    actor = await authenticate(request)
    require_admin(actor)
    body = parse_model(await read_json_body(request), TaskMirrorRequest)

    expires_at: str | None = None
    if body.expires_at is not None:
        try:
            expires_at = to_iso(parse_iso(body.expires_at))
        except ValueError as exc:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "expires_at must be an ISO 8601 timestamp",
                400,
                {},
            ) from exc

    state = get_app_state()
    if state.store is None:
        msg = "Ledger not initialized"
        raise RuntimeError(msg)

    task = await run_in_threadpool(
        state.store.upsert_task,
        {
            "task_id": task_id,
            "client_id": body.client_id,
            "steward_id": body.steward_id,
            "category": body.category,
            "status": body.status,
            "agreed_price": body.agreed_price,
            "currency": body.currency.upper(),
            "expires_at": expires_at,
        },
    )
    get_logger(__name__).info(
        "Task mirrored",
        extra={"task_id": task_id, "status": body.status, "actor": actor.user_id},
    )
    return task
