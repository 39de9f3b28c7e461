"""
Transactional outbox.

Domain changes (payment intent updates, ledger credits, external transaction
outcomes) write an event row in the same transaction; a background publisher
relays unpublished rows in creation order. A failed publish leaves the row in
place for the next poll.
"""
import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_routing.database.connection import get_session_factory
from payment_routing.database.models import OutboxEvent, utcnow
from payment_routing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PublisherFunc = Callable[[Dict[str, Any]], Awaitable[None]]


def add_outbox_event(
    db: AsyncSession,
    aggregate_id: uuid.UUID,
    aggregate_type: str,
    event_type: str,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """
    Stage an outbox event in the caller's transaction.

    Args:
        db: Session holding the domain change
        aggregate_id: Id of the changed entity
        aggregate_type: Entity kind (payment_intent, account, ...)
        event_type: Event name, e.g. ``payment_intent.succeeded``
        payload: JSON-serializable event body

    Returns:
        OutboxEvent: The pending row
    """
    event = OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
        published=False,
    )
    db.add(event)
    return event


def serialize_event(event: OutboxEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "aggregate_id": str(event.aggregate_id),
        "aggregate_type": event.aggregate_type,
        "event_type": event.event_type,
        "payload": event.payload,
        "created_at": event.created_at.isoformat(),
    }


class OutboxPublisher:
    """
    Relays events from the outbox table.

    1. Read a batch of unpublished events, oldest first
    2. Hand each to the publisher function
    3. Mark the delivered ones as published
    """

    def __init__(
        self,
        publisher_func: Optional[PublisherFunc] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine delivering one event; raising keeps it queued
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval when the outbox is empty
            session_factory: Optional session factory (defaults to the app's)
        """
        self.publisher_func = publisher_func or self._default_publisher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.session_factory = session_factory
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        """Log-only publisher used when no notification endpoint is configured."""
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if published successfully, False otherwise
        """
        try:
            await self.publisher_func(serialize_event(event))
        except Exception as e:
            metrics.record_outbox_publish_failure(event.event_type)
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
        )
        return True

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return

        await db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=utcnow())
        )
        await db.commit()

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self._sessions()() as db:
            try:
                events = await self._fetch_unpublished_events(db)
                if not events:
                    metrics.set_outbox_queue_depth(0)
                    return 0

                published_ids = []
                for event in events:
                    if await self._publish_event(event):
                        published_ids.append(event.id)

                await self._mark_as_published(db, published_ids)

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                    failed=len(events) - len(published_ids),
                )
                return len(published_ids)

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def start(self) -> None:
        """Poll and publish until :meth:`stop` is called."""
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        # More may be waiting
                        await asyncio.sleep(0.1)
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Number of unpublished events."""
        async with self._sessions()() as db:
            result = await db.execute(
                select(func.count()).select_from(OutboxEvent).where(OutboxEvent.published.is_(False))
            )
            return int(result.scalar_one())
