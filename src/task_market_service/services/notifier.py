"""Fire-and-forget notifications to task participants."""

from __future__ import annotations

from typing import TYPE_CHECKING

from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from task_market_service.clients.notification_client import NotificationClient
    from task_market_service.services.background import BackgroundRunner
    from task_market_service.services.statuses import NotificationType


class Notifier:
    """
    Schedules notification delivery off the request path.

    Delivery failures are logged and swallowed: a lost notification never
    fails the state transition that triggered it. Without a client every
    notification is only logged.
    """

    def __init__(self, client: NotificationClient | None, background: BackgroundRunner) -> None:
        self._client = client
        self._background = background
        self._logger = get_logger(__name__)

    def set_client(self, client: NotificationClient) -> None:
        """Replace the delivery client (used when tests swap in mocks)."""
        self._client = client

    def notify(
        self,
        recipient: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        link: str | None = None,
    ) -> None:
        """Schedule one notification; returns immediately."""
        if self._client is None:
            self._logger.debug(
                "Notification not delivered (no notification service configured)",
                extra={"recipient": recipient, "notification_type": str(notification_type)},
            )
            return

        self._background.spawn(
            self._deliver(recipient, notification_type, title, message, link),
            name=f"notify:{notification_type}:{recipient}",
        )

    async def _deliver(
        self,
        recipient: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        link: str | None,
    ) -> None:
        if self._client is None:
            return
        try:
            await self._client.send(
                recipient=recipient,
                notification_type=str(notification_type),
                title=title,
                message=message,
                link=link,
            )
        except Exception as exc:
            self._logger.warning(
                "Notification delivery failed",
                extra={
                    "recipient": recipient,
                    "notification_type": str(notification_type),
                    "error": str(exc),
                },
            )
