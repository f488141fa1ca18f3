"""Payment initiation, verification and gateway webhook endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from service_commons.exceptions import ServiceError

from escrow_ledger_service.config import get_settings
from escrow_ledger_service.core.state import get_app_state
from escrow_ledger_service.logging import get_logger
from escrow_ledger_service.routers.helpers import (
    authenticate,
    optional_str,
    parse_json_body,
    read_json_body,
    require_str,
)

router = APIRouter()


@router.post("/payments/initiate", status_code=201)
async def initiate_payment(request: Request) -> JSONResponse:
    """Open a PENDING charge for a task and return the hosted payment link."""
    actor = await authenticate(request)
    data = await read_json_body(request)
    task_id = require_str(data, "task_id")
    customer = {
        key: value
        for key, value in (
            ("email", optional_str(data, "customer_email")),
            ("name", optional_str(data, "customer_name")),
            ("phonenumber", optional_str(data, "customer_phone")),
        )
        if value is not None
    }

    state = get_app_state()
    if state.escrow_machine is None:
        msg = "Escrow state machine not initialized"
        raise RuntimeError(msg)

    result = await state.escrow_machine.initiate_charge(task_id, actor, customer)
    return JSONResponse(status_code=201, content=result)


@router.get("/payments/verify")
async def verify_payment(request: Request) -> dict[str, Any]:
    """Gateway redirect target: verify the charge and apply the confirmation."""
    tx_ref = request.query_params.get("tx_ref")
    if not tx_ref:
        raise ServiceError("INVALID_PAYLOAD", "tx_ref is required", 400, {})

    state = get_app_state()
    if state.reconciler is None:
        msg = "Gateway reconciler not initialized"
        raise RuntimeError(msg)

    return await state.reconciler.verify_charge(
        tx_ref,
        request.query_params.get("transaction_id"),
        request.query_params.get("status"),
    )


@router.post("/payments/webhook")
async def gateway_webhook(request: Request) -> JSONResponse:
    """
    Receive a gateway event.

    Only the signature check can fail the request. Everything after it is
    acknowledged with 200 so the provider does not retry.
    """
    logger = get_logger(__name__)
    state = get_app_state()
    if state.reconciler is None:
        msg = "Gateway reconciler not initialized"
        raise RuntimeError(msg)

    header_name = get_settings().gateway.signature_header
    if not state.reconciler.verify_signature(request.headers.get(header_name)):
        logger.warning("Webhook rejected: invalid signature", extra={"header": header_name})
        raise ServiceError("UNAUTHORIZED", "Invalid webhook signature", 401, {})

    try:
        payload = parse_json_body(await request.body())
    except ServiceError:
        logger.warning("Webhook body is not a JSON object")
        return JSONResponse(status_code=200, content={"received": True})

    await state.reconciler.process_webhook(payload)
    return JSONResponse(status_code=200, content={"received": True})
