"""
Best-effort delivery of outbox events to the notification (email) service.

Failures raise so the outbox keeps the event for the next poll; nothing here
ever runs inside a webhook request.
"""
from typing import Any, Dict, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class NotificationError(Exception):
    """Raised when the notification service rejects or cannot take an event."""

    pass


class NotificationClient:
    """POSTs outbox events as JSON to the notification service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def publish(self, event_data: Dict[str, Any]) -> None:
        """
        Deliver one event.

        Raises:
            NotificationError: On transport failure or a non-2xx response
        """
        try:
            response = await self._client.post(
                self.base_url,
                json=event_data,
                headers={"X-Event-Type": str(event_data.get("event_type", ""))},
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"Notification service unreachable: {e}") from e

        if response.is_error:
            raise NotificationError(
                f"Notification service returned HTTP {response.status_code}"
            )
        logger.debug(
            "notification_delivered",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def close(self) -> None:
        await self._client.aclose()
