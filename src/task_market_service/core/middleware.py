"""ASGI middleware for request validation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send


def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": {}},
    )


def _too_large() -> JSONResponse:
    return _error_response(413, "PAYLOAD_TOO_LARGE", "Request body exceeds maximum allowed size")


class RequestValidationMiddleware:
    """
    ASGI middleware that validates body size and Content-Type.

    Runs before FastAPI routes on POST/PUT/PATCH:
    - 413 when the declared Content-Length or the buffered body exceeds
      max_body_size; a declared oversize is refused before reading the body
    - 415 when a non-empty body is not declared as application/json

    Action endpoints without a body (accept, cancel, activate, ...) may omit
    the Content-Type header entirely.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = cast("str", scope.get("method", "GET"))
        if method not in ("POST", "PUT", "PATCH"):
            await self.app(scope, receive, send)
            return

        raw_headers = cast("list[tuple[bytes, bytes]]", scope.get("headers", []))
        headers: dict[bytes, bytes] = dict(raw_headers)
        content_type = headers.get(b"content-type", b"").decode().lower()

        declared_length = headers.get(b"content-length", b"")
        if declared_length.isdigit() and int(declared_length) > self.max_body_size:
            await _too_large()(scope, receive, send)
            return

        body_parts: list[bytes] = []
        body_size = 0

        while True:
            message = cast("dict[str, Any]", await receive())
            chunk = cast("bytes", message.get("body", b""))
            body_parts.append(chunk)
            body_size += len(chunk)

            if body_size > self.max_body_size:
                await _too_large()(scope, receive, send)
                return

            if not message.get("more_body", False):
                break

        if body_size > 0 and not content_type.startswith("application/json"):
            response = _error_response(
                415,
                "UNSUPPORTED_MEDIA_TYPE",
                "Content-Type must be application/json",
            )
            await response(scope, receive, send)
            return

        # Replay buffered body for downstream app
        full_body = b"".join(body_parts)
        body_sent = False

        async def buffered_receive() -> dict[str, Any]:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": full_body, "more_body": False}
            return {"type": "http.disconnect"}

        await self.app(scope, buffered_receive, send)
