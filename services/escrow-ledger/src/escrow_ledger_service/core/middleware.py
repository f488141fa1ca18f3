"""ASGI guard for JSON request bodies."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, cast

from escrow_ledger_service.core.exceptions import error_response

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send


def _paths(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(f"^{pattern}$") for pattern in patterns)


# Routes that read a JSON document, keyed by method. The gateway webhook is not
# listed: it must be acknowledged whatever the provider sends.
JSON_BODY_ROUTES: dict[str, tuple[re.Pattern[str], ...]] = {
    "PUT": _paths(r"/internal/tasks/[^/]+"),
    "PATCH": _paths(r"/admin/disputes/[^/]+"),
    "POST": _paths(
        r"/payments/initiate",
        r"/tasks/[^/]+/dispute",
        r"/tasks/[^/]+/milestones",
        r"/admin/transactions/[^/]+/refund",
        r"/admin/tasks/[^/]+/freeze",
        r"/wallet/withdraw",
    ),
}


def expects_json_body(method: str, path: str) -> bool:
    return any(pattern.match(path) for pattern in JSON_BODY_ROUTES.get(method, ()))


class RequestValidationMiddleware:
    """
    Reject non-JSON or oversized bodies on ledger write routes.

    Requests the table does not list pass straight through, so the router
    still answers unknown paths with 404 and wrong methods with 405.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not expects_json_body(
            cast("str", scope["method"]), cast("str", scope["path"])
        ):
            await self.app(scope, receive, send)
            return

        headers = {
            name.decode("latin-1").lower(): value.decode("latin-1")
            for name, value in cast("list[tuple[bytes, bytes]]", scope.get("headers", []))
        }

        if not headers.get("content-type", "").lower().startswith("application/json"):
            await error_response(
                415, "UNSUPPORTED_MEDIA_TYPE", "Content-Type must be application/json"
            )(scope, receive, send)
            return

        declared = headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_body_size:
            await self._too_large(scope, receive, send)
            return

        body = bytearray()
        more_body = True
        while more_body:
            message = cast("dict[str, Any]", await receive())
            body.extend(message.get("body", b""))
            more_body = message.get("more_body", False)
            if len(body) > self.max_body_size:
                await self._too_large(scope, receive, send)
                return

        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if replayed:
                return {"type": "http.disconnect"}
            replayed = True
            return {"type": "http.request", "body": bytes(body), "more_body": False}

        await self.app(scope, replay, send)

    @staticmethod
    async def _too_large(scope: Scope, receive: Receive, send: Send) -> None:
        await error_response(
            413, "PAYLOAD_TOO_LARGE", "Request body exceeds maximum allowed size"
        )(scope, receive, send)
