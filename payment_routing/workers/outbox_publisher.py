"""
Outbox publisher background worker.

Continuously polls the outbox table and relays events to the notification
service, or logs them when no service URL is configured.
"""
import asyncio
import signal
from typing import Optional, Tuple

import httpx
import structlog

from payment_routing.config import Settings, get_settings
from payment_routing.core.outbox import OutboxPublisher
from payment_routing.integrations.notification_client import NotificationClient
from payment_routing.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def build_publisher(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Tuple[OutboxPublisher, Optional[NotificationClient]]:
    """
    Wire an outbox publisher from settings.

    Returns:
        The publisher and the notification client it delivers through, if any
    """
    client = None
    publisher_func = None
    if settings.notification_service_url:
        client = NotificationClient(settings.notification_service_url, transport=transport)
        publisher_func = client.publish
    else:
        logger.warning("notification_service_not_configured")

    publisher = OutboxPublisher(
        publisher_func=publisher_func,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval,
    )
    return publisher, client


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs until SIGINT or SIGTERM.
    """
    setup_logging()
    logger.info("outbox_publisher_worker_starting")

    publisher, client = build_publisher(get_settings())

    # Graceful shutdown: finish the current batch, then leave the loop
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, publisher.stop)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        if client is not None:
            await client.close()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
