"""Async HTTP client for the Notification service."""

from __future__ import annotations

import httpx

from task_market_service.core.exceptions import ServiceError


class NotificationClient:
    """Posts notifications for delivery; delivery itself is the service's concern."""

    def __init__(self, base_url: str, notify_path: str, timeout_seconds: int) -> None:
        self._notify_path = notify_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def send(
        self,
        recipient: str,
        notification_type: str,
        title: str,
        message: str,
        link: str | None,
    ) -> None:
        """
        Submit one notification.

        Raises:
            ServiceError: NOTIFICATION_SERVICE_UNAVAILABLE (502) when the post fails
        """
        try:
            response = await self._client.post(
                self._notify_path,
                json={
                    "recipient": recipient,
                    "type": notification_type,
                    "title": title,
                    "message": message,
                    "link": link,
                },
            )
        except httpx.HTTPError as exc:
            raise ServiceError(
                "NOTIFICATION_SERVICE_UNAVAILABLE",
                "Cannot reach Notification service",
                502,
            ) from exc

        if response.status_code >= 300:
            raise ServiceError(
                "NOTIFICATION_SERVICE_UNAVAILABLE",
                f"Notification service returned status {response.status_code}",
                502,
            )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
