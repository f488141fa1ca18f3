"""Async HTTP client for the external payment gateway."""

from __future__ import annotations

from typing import Any

import httpx
from service_commons.exceptions import ServiceError

from escrow_ledger_service.logging import get_logger


class GatewayClient:
    """
    Client for the payment processor's charge, verify, transfer and refund APIs.

    Every reply is an envelope of the form {"status": ..., "message": ..., "data": {...}}.
    Transport failures, non-2xx replies and envelopes whose status is not
    "success" all raise GATEWAY_FAILURE (502).
    """

    def __init__(
        self,
        base_url: str,
        secret_key: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {secret_key}"},
        )

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        logger = get_logger(__name__)

        try:
            response = await self._client.request(method, path, json=json_body)
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment gateway request failed",
                extra={"operation": operation, "error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                "GATEWAY_FAILURE",
                f"Payment gateway {operation} request failed",
                502,
                {"operation": operation},
            ) from exc

        try:
            envelope = response.json()
        except ValueError:
            envelope = {}

        if response.status_code >= 300 or not isinstance(envelope, dict):
            logger.warning(
                "Payment gateway unexpected status",
                extra={"operation": operation, "status_code": response.status_code},
            )
            raise ServiceError(
                "GATEWAY_FAILURE",
                f"Payment gateway {operation} returned status {response.status_code}",
                502,
                {"operation": operation, "status_code": response.status_code},
            )

        if envelope.get("status") != "success":
            logger.warning(
                "Payment gateway reported an error",
                extra={"operation": operation, "gateway_message": envelope.get("message")},
            )
            raise ServiceError(
                "GATEWAY_FAILURE",
                str(envelope.get("message") or f"Payment gateway {operation} failed"),
                502,
                {"operation": operation},
            )

        data = envelope.get("data")
        return data if isinstance(data, dict) else {}

    async def create_charge(
        self,
        tx_ref: str,
        amount: int,
        currency: str,
        redirect_url: str,
        customer: dict[str, Any],
        description: str,
    ) -> str:
        """
        Create a hosted payment page for a charge.

        ``tx_ref`` is our transaction id; the gateway uses it as the
        idempotency reference and echoes it back in webhooks.

        Returns:
            The hosted payment link.
        """
        data = await self._request(
            "POST",
            "/payments",
            "create_charge",
            {
                "tx_ref": tx_ref,
                "amount": str(amount),
                "currency": currency,
                "redirect_url": redirect_url,
                "customer": customer,
                "customizations": {"title": "Task payment", "description": description},
                "meta": {"transaction_id": tx_ref},
            },
        )
        link = data.get("link")
        if not isinstance(link, str) or not link:
            raise ServiceError(
                "GATEWAY_FAILURE",
                "Payment gateway did not return a payment link",
                502,
                {"operation": "create_charge"},
            )
        return link

    async def verify_transaction(self, provider_transaction_id: str) -> dict[str, Any]:
        """
        Look up a charge at the gateway.

        Returns:
            dict with at least: id, tx_ref, status, amount, currency
        """
        return await self._request(
            "GET",
            f"/transactions/{provider_transaction_id}/verify",
            "verify_transaction",
        )

    async def initiate_transfer(
        self,
        account_bank: str,
        account_number: str,
        amount: int,
        currency: str,
        reference: str,
        narration: str,
        beneficiary_name: str,
    ) -> dict[str, Any]:
        """
        Send money out of the platform (mobile money or bank account).

        Returns:
            dict with at least: id, reference, status (NEW, PENDING, SUCCESSFUL, FAILED)
        """
        return await self._request(
            "POST",
            "/transfers",
            "initiate_transfer",
            {
                "account_bank": account_bank,
                "account_number": account_number,
                "amount": amount,
                "currency": currency,
                "reference": reference,
                "narration": narration,
                "beneficiary_name": beneficiary_name,
            },
        )

    async def refund_transaction(
        self,
        provider_transaction_id: str,
        amount: int,
        comments: str,
    ) -> dict[str, Any]:
        """
        Refund a captured charge back to the payer.

        Returns:
            dict with at least: id, status
        """
        return await self._request(
            "POST",
            f"/transactions/{provider_transaction_id}/refund",
            "refund_transaction",
            {"amount": amount, "comments": comments},
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
