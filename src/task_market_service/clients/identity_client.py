"""Async HTTP client for the Identity service."""

from __future__ import annotations

from typing import Any

import httpx

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger


class IdentityClient:
    """
    Resolves bearer tokens to agent identities.

    Signature verification is delegated to the Identity service, which owns
    the public key registry; this service never sees caller keys.
    """

    def __init__(
        self,
        base_url: str,
        verify_jws_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._verify_jws_path = verify_jws_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def verify_jws(self, token: str) -> dict[str, Any]:
        """
        Verify a JWS compact token.

        Returns:
            dict with keys: valid (bool), agent_id (str), payload (dict)

        Raises:
            ServiceError: FORBIDDEN (403) if the signature is not valid
            ServiceError: IDENTITY_SERVICE_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.post(self._verify_jws_path, json={"token": token})
        except httpx.HTTPError as exc:
            logger.warning(
                "Identity service request failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Cannot reach Identity service",
                502,
            ) from exc

        if response.status_code != 200:
            logger.warning(
                "Identity service unexpected status",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Identity service returned unexpected status",
                502,
            )

        result: dict[str, Any] = response.json()
        if not result.get("valid", False):
            raise ServiceError("FORBIDDEN", "JWS signature verification failed", 403)
        return result

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
