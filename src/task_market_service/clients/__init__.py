"""HTTP clients for external service communication and platform signing."""

from task_market_service.clients.escrow_gateway_client import (
    EscrowGateway,
    EscrowGatewayClient,
    TransferResult,
)
from task_market_service.clients.identity_client import IdentityClient
from task_market_service.clients.notification_client import NotificationClient
from task_market_service.clients.platform_signer import PlatformSigner

__all__ = [
    "EscrowGateway",
    "EscrowGatewayClient",
    "IdentityClient",
    "NotificationClient",
    "PlatformSigner",
    "TransferResult",
]
