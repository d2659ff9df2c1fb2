"""Customer notification delivery for outbox events."""
from typing import Any, Dict, Optional

import httpx
import structlog

from laundry_ops.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class NotificationError(Exception):
    """Raised when the notification endpoint rejects or cannot take an event."""

    pass


class Notifier:
    """
    Forwards outbox events to the notification service.

    With no ``notification_webhook_url`` configured, events are only logged.
    Raising from ``notify`` leaves the event unpublished so the outbox
    publisher retries it on its next poll.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.url = self.settings.notification_webhook_url
        self.http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(timeout=10.0)
        return self.http_client

    async def notify(self, event: Dict[str, Any]) -> None:
        """
        Deliver one event.

        Args:
            event: Outbox event data (event_type, aggregate, payload)

        Raises:
            NotificationError: If the endpoint is unreachable or answers with an error
        """
        if not self.url:
            logger.info(
                "notification_logged",
                event_type=event.get("event_type"),
                aggregate_type=event.get("aggregate_type"),
                aggregate_id=event.get("aggregate_id"),
            )
            return

        try:
            response = await self._client().post(self.url, json=event)
        except httpx.HTTPError as e:
            raise NotificationError(f"Notification endpoint unreachable: {e}") from e

        if response.status_code >= 400:
            raise NotificationError(
                f"Notification endpoint returned HTTP {response.status_code}"
            )

        logger.info(
            "notification_sent",
            event_type=event.get("event_type"),
            aggregate_id=event.get("aggregate_id"),
            status_code=response.status_code,
        )

    async def close(self) -> None:
        if self.http_client is not None and self._owns_client:
            await self.http_client.aclose()
            self.http_client = None
