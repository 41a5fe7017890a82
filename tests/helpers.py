"""Shared test helpers for JWS authentication."""

from __future__ import annotations

import base64
import json
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from joserfc import jws
from joserfc.jwk import OKPKey


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def make_jws_token(
    private_key: Ed25519PrivateKey,
    agent_id: str,
    payload: dict[str, Any],
) -> str:
    """Create a real JWS compact token signed by the given key."""
    key = OKPKey.import_key(
        {
            "kty": "OKP",
            "crv": "Ed25519",
            "d": _b64url(private_key.private_bytes_raw()),
            "x": _b64url(private_key.public_key().public_bytes_raw()),
        }
    )
    protected = {"alg": "EdDSA", "kid": agent_id}
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return jws.serialize_compact(protected, payload_bytes, key, algorithms=["EdDSA"])


def auth_headers(agent_id: str, action: str = "request") -> dict[str, str]:
    """Authorization header carrying a freshly signed token for `agent_id`."""
    token = make_jws_token(Ed25519PrivateKey.generate(), agent_id, {"action": action})
    return {"Authorization": f"Bearer {token}"}


def extract_kid(token: str) -> str:
    """Extract the kid (agent_id) from a JWS compact token header."""
    header_b64 = token.split(".", maxsplit=1)[0]
    padded = header_b64 + "=" * (-len(header_b64) % 4)
    header = json.loads(base64.urlsafe_b64decode(padded))
    return str(header.get("kid", "unknown"))
