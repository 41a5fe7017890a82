"""Shared request helpers for task-market routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from task_market_service.services.token_validator import Actor


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
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


async def read_body(request: Request) -> dict[str, Any]:
    """Parse the request body; an empty body is an empty object."""
    body = await request.body()
    return {} if body == b"" else parse_json_body(body)


def extract_string(data: dict[str, Any], field_name: str) -> str:
    """Extract a required, non-empty string field from a parsed body."""
    if field_name not in data or data[field_name] is None:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Missing required field: {field_name}",
            400,
            {"field": field_name},
        )

    value = data[field_name]
    if not isinstance(value, str):
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be a string",
            400,
            {"field": field_name},
        )
    if not value.strip():
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must not be empty",
            400,
            {"field": field_name},
        )
    return value


def extract_optional_string(data: dict[str, Any], field_name: str) -> str | None:
    """Extract an optional string field; null and absent both mean None."""
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


def parse_non_negative_int(raw: str | None, name: str, *, minimum: int) -> int | None:
    """Parse an optional integer query parameter."""
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be an integer", 400, {}) from exc
    if value < minimum:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be >= {minimum}", 400, {})
    return value


async def authenticate(request: Request) -> Actor:
    """Resolve the calling actor from the Authorization header."""
    state = get_app_state()
    if state.token_validator is None:
        msg = "TokenValidator not initialized"
        raise RuntimeError(msg)
    return await state.token_validator.authenticate(request.headers.get("authorization"))
