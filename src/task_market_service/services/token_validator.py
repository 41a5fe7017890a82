"""Bearer token authentication: resolves the calling agent for every operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from task_market_service.clients.identity_client import IdentityClient


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of an operation."""

    agent_id: str
    is_admin: bool = False


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the JWS token from an Authorization header."""
    if authorization is None:
        raise ServiceError("UNAUTHORIZED", "Missing Authorization header", 401)

    if not authorization.startswith("Bearer "):
        raise ServiceError("UNAUTHORIZED", "Authorization header must use Bearer scheme", 401)

    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise ServiceError("UNAUTHORIZED", "Bearer token must not be empty", 401)
    return token


class TokenValidator:
    """
    Verifies bearer tokens through the Identity service and builds an Actor.

    Error precedence:
    - UNAUTHORIZED (401): header missing or malformed
    - INVALID_JWS (400): token is not a three-part compact JWS
    - IDENTITY_SERVICE_UNAVAILABLE (502): Identity service unreachable
    - FORBIDDEN (403): signature invalid
    """

    def __init__(self, identity_client: IdentityClient, admin_ids: Iterable[str]) -> None:
        self._identity_client = identity_client
        self._admin_ids = frozenset(admin_ids)

    def set_identity_client(self, identity_client: IdentityClient) -> None:
        """Replace the Identity client (used when tests swap in mocks)."""
        self._identity_client = identity_client

    async def authenticate(self, authorization: str | None) -> Actor:
        """Resolve an Authorization header to the calling Actor."""
        token = extract_bearer_token(authorization)
        if len(token.split(".")) != 3:
            raise ServiceError(
                "INVALID_JWS",
                "Token must be in JWS compact serialization format (header.payload.signature)",
                400,
            )

        result: Any
        try:
            result = await self._identity_client.verify_jws(token)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Cannot connect to Identity service",
                502,
            ) from exc

        if not isinstance(result, dict):
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Identity service returned an unexpected response",
                502,
            )
        agent_id = result.get("agent_id")
        if not isinstance(agent_id, str) or not agent_id:
            raise ServiceError("INVALID_JWS", "Token signer is missing", 400)

        return Actor(agent_id=agent_id, is_admin=agent_id in self._admin_ids)
