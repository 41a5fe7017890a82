"""Escrow gateway contract and its HTTP implementation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from decimal import Decimal

    from task_market_service.clients.platform_signer import PlatformSigner


@dataclass(frozen=True)
class TransferResult:
    """Outcome of one blockchain transfer."""

    success: bool
    transaction_hash: str | None = None
    error: str | None = None


class EscrowGateway(Protocol):
    """Moves funds out of escrow wallets. Calls are never retried by the caller."""

    async def transfer(
        self,
        destination_address: str,
        amount: Decimal,
        source_wallet_ref: str | None = None,
    ) -> TransferResult: ...

    async def refund(
        self,
        creator_address: str,
        source_wallet_ref: str,
        amount: Decimal,
    ) -> TransferResult: ...


class EscrowGatewayClient:
    """
    HTTP client for the escrow gateway service.

    Each request carries a platform-signed JWS. A declined transfer is a
    TransferResult with success=False; an unreachable gateway raises
    ServiceError("ESCROW_GATEWAY_UNAVAILABLE", ..., 502).
    """

    def __init__(
        self,
        base_url: str,
        transfer_path: str,
        refund_path: str,
        timeout_seconds: int,
        platform_signer: PlatformSigner,
    ) -> None:
        self._base_url = base_url
        self._transfer_path = transfer_path
        self._refund_path = refund_path
        self._platform_signer = platform_signer
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )
        self._logger = get_logger(__name__)

    async def transfer(
        self,
        destination_address: str,
        amount: Decimal,
        source_wallet_ref: str | None = None,
    ) -> TransferResult:
        """Transfer `amount` USDC from the source wallet to a worker."""
        token = self._platform_signer.sign(
            {
                "action": "escrow_transfer",
                "destination_address": destination_address,
                "amount": str(amount),
                "source_wallet_ref": source_wallet_ref,
            }
        )
        return await self._post(self._transfer_path, token, operation="transfer")

    async def refund(
        self,
        creator_address: str,
        source_wallet_ref: str,
        amount: Decimal,
    ) -> TransferResult:
        """Return `amount` USDC from a task's escrow wallet to its creator."""
        token = self._platform_signer.sign(
            {
                "action": "escrow_refund",
                "creator_address": creator_address,
                "amount": str(amount),
                "source_wallet_ref": source_wallet_ref,
            }
        )
        return await self._post(self._refund_path, token, operation="refund")

    async def _post(self, path: str, token: str, operation: str) -> TransferResult:
        try:
            response = await self._client.post(path, json={"token": token})
        except httpx.HTTPError as exc:
            self._logger.warning(
                "Escrow gateway request failed",
                extra={"operation": operation, "error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                "ESCROW_GATEWAY_UNAVAILABLE",
                f"Escrow gateway {operation} request failed",
                502,
            ) from exc

        body = self._json_body(response)

        if response.status_code >= 500:
            self._logger.warning(
                "Escrow gateway server error",
                extra={"operation": operation, "status_code": response.status_code},
            )
            raise ServiceError(
                "ESCROW_GATEWAY_UNAVAILABLE",
                f"Escrow gateway returned status {response.status_code}",
                502,
            )

        if response.status_code >= 400 or body.get("success") is False:
            error = body.get("error") or body.get("message") or f"HTTP {response.status_code}"
            return TransferResult(success=False, error=str(error))

        transaction_hash = body.get("transaction_hash")
        if not isinstance(transaction_hash, str) or not transaction_hash:
            return TransferResult(
                success=False, error="Escrow gateway returned no transaction hash"
            )
        return TransferResult(success=True, transaction_hash=transaction_hash)

    @staticmethod
    def _json_body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
