"""Async HTTP client for the Identity service."""

from __future__ import annotations

from typing import Any

import httpx
from service_commons.exceptions import ServiceError

from escrow_ledger_service.logging import get_logger
from escrow_ledger_service.services.access import Actor

logger = get_logger(__name__)


class IdentityClient:
    """
    Resolves session tokens to actors.

    The ledger never inspects session tokens itself. It posts them to the
    Identity service, which answers with the caller's user id, role and
    current trust level. Anything other than a well-formed 200 reply is
    IDENTITY_SERVICE_UNAVAILABLE (502); a reply with ``valid: false`` is
    UNAUTHORIZED (401).
    """

    def __init__(
        self,
        base_url: str,
        verify_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._verify_path = verify_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    def _unavailable(self, reason: str, **context: Any) -> ServiceError:
        logger.warning(
            "Session verification failed",
            extra={"reason": reason, "base_url": self._base_url, **context},
        )
        return ServiceError(
            "IDENTITY_SERVICE_UNAVAILABLE",
            f"Identity service {reason}",
            502,
            {},
        )

    async def verify_token(self, token: str) -> Actor:
        try:
            response = await self._client.post(self._verify_path, json={"token": token})
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise self._unavailable("is unreachable", error=str(exc)) from exc
        except httpx.HTTPError as exc:
            raise self._unavailable("request failed", error=str(exc)) from exc

        if response.status_code != 200:
            raise self._unavailable(
                "returned unexpected status", status_code=response.status_code
            )

        try:
            session = response.json()
        except ValueError as exc:
            raise self._unavailable("returned a malformed reply") from exc
        if not isinstance(session, dict):
            raise self._unavailable("returned a malformed reply")

        if not session.get("valid", False):
            raise ServiceError("UNAUTHORIZED", "Session token is invalid or expired", 401, {})
        if "user_id" not in session or "role" not in session:
            raise self._unavailable("returned a session without user_id or role")

        return Actor(
            user_id=str(session["user_id"]),
            role=str(session["role"]).upper(),
            trust_level=str(session.get("trust_level", "MEDIUM")).upper(),
        )

    async def close(self) -> None:
        await self._client.aclose()
