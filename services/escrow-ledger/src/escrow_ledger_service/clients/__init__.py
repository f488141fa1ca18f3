"""HTTP clients for the identity service and the payment gateway."""

from escrow_ledger_service.clients.gateway_client import GatewayClient
from escrow_ledger_service.clients.identity_client import IdentityClient

__all__ = ["GatewayClient", "IdentityClient"]
