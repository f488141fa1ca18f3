"""Shared router helper functions."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ValidationError
from service_commons.exceptions import ServiceError

from escrow_ledger_service.core.state import get_app_state
from escrow_ledger_service.services.access import Ok, StepUpRequired

if TYPE_CHECKING:
    from fastapi import Request

    from escrow_ledger_service.services.access import Actor

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)

MAX_PAGE_SIZE = 200


def parse_json_body(body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


async def read_json_body(request: Request, *, allow_empty: bool = False) -> dict[str, Any]:
    """Read and parse the request body. An empty body is {} when allowed."""
    body = await request.body()
    if body == b"" and allow_empty:
        return {}
    return parse_json_body(body)


def require_str(data: dict[str, Any], field_name: str) -> str:
    """Extract a required non-empty string field."""
    value = data.get(field_name)
    if not isinstance(value, str) or not value.strip():
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be a non-empty string",
            400,
            {"field": field_name},
        )
    return value.strip()


def optional_str(data: dict[str, Any], field_name: str) -> str | None:
    """Extract an optional string field."""
    value = data.get(field_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be a string",
            400,
            {"field": field_name},
        )
    return value


def require_int(data: dict[str, Any], field_name: str) -> int:
    """Extract a required integer field (booleans are rejected)."""
    value = data.get(field_name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ServiceError(
            "INVALID_AMOUNT" if field_name == "amount" else "INVALID_PAYLOAD",
            f"Field '{field_name}' must be an integer",
            400,
            {"field": field_name},
        )
    return value


def parse_int_query(request: Request, name: str, default: int, *, minimum: int) -> int:
    """Parse an integer query parameter with a lower bound."""
    raw = request.query_params.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be an integer", 400, {}) from exc
    if value < minimum:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be >= {minimum}", 400, {})
    return value


def parse_pagination(request: Request, default_limit: int = 50) -> tuple[int, int]:
    """Return (limit, offset) from the query string."""
    limit = min(parse_int_query(request, "limit", default_limit, minimum=1), MAX_PAGE_SIZE)
    offset = parse_int_query(request, "offset", 0, minimum=0)
    return limit, offset


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the session token from the Authorization header."""
    if authorization is None:
        raise ServiceError("UNAUTHORIZED", "Missing Authorization header", 401, {})

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "UNAUTHORIZED",
            "Authorization header must use Bearer scheme",
            401,
            {},
        )

    token = authorization[len("Bearer ") :]
    if not token:
        raise ServiceError("UNAUTHORIZED", "Bearer token must not be empty", 401, {})

    return token


async def authenticate(request: Request) -> Actor:
    """Resolve the caller through the Identity service."""
    token = extract_bearer_token(request.headers.get("authorization"))
    state = get_app_state()
    if state.identity_client is None:
        msg = "Identity client not initialized"
        raise RuntimeError(msg)
    return await state.identity_client.verify_token(token)


def require_admin(actor: Actor) -> None:
    """Check that the caller is an administrator."""
    if not actor.is_admin:
        raise ServiceError("FORBIDDEN", "Admin role required", 403, {})


def unwrap_step_up(result: Ok[T] | StepUpRequired) -> T:
    """Turn a step-up guarded result into its value or the STEP_UP_REQUIRED error."""
    if isinstance(result, StepUpRequired):
        raise result.to_error()
    return result.value


def parse_model(data: dict[str, Any], model: type[ModelT]) -> ModelT:
    """Validate a parsed body against a request model."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ServiceError(
            "INVALID_PAYLOAD",
            "Request body failed validation",
            400,
            {"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc
