"""Tests for the transactional outbox, the notification client and the worker wiring."""
import json
import uuid
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import select

from payment_routing.config import Settings
from payment_routing.core.outbox import OutboxPublisher, add_outbox_event, serialize_event
from payment_routing.database.models import OutboxEvent
from payment_routing.integrations.notification_client import NotificationClient, NotificationError
from payment_routing.workers.outbox_publisher import build_publisher


async def _stage(db, *event_types: str) -> None:
    for event_type in event_types:
        add_outbox_event(
            db,
            aggregate_id=uuid.uuid4(),
            aggregate_type="payment_intent",
            event_type=event_type,
            payload={"status": event_type.rsplit(".", 1)[-1]},
        )
    await db.commit()


async def _published_flags(db) -> list:
    result = await db.execute(
        select(OutboxEvent.event_type, OutboxEvent.published).order_by(OutboxEvent.id)
    )
    return [tuple(row) for row in result.all()]


class TestOutboxPublisher:
    """Polling relay from the outbox table."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_publishes_in_order(self, test_db, session_factory):
        await _stage(test_db, "payment_intent.created", "payment_intent.succeeded")
        publish = AsyncMock()
        publisher = OutboxPublisher(publisher_func=publish, session_factory=session_factory)

        published = await publisher.process_batch()

        assert published == 2
        sent = [call.args[0]["event_type"] for call in publish.await_args_list]
        assert sent == ["payment_intent.created", "payment_intent.succeeded"]
        assert await _published_flags(test_db) == [
            ("payment_intent.created", True),
            ("payment_intent.succeeded", True),
        ]
        assert await publisher.get_pending_count() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_delivery_stays_queued(self, test_db, session_factory):
        await _stage(test_db, "payment_intent.created", "payment_intent.failed")

        async def publish(event):
            if event["event_type"] == "payment_intent.failed":
                raise NotificationError("HTTP 503")

        publisher = OutboxPublisher(publisher_func=publish, session_factory=session_factory)

        assert await publisher.process_batch() == 1
        assert await _published_flags(test_db) == [
            ("payment_intent.created", True),
            ("payment_intent.failed", False),
        ]
        assert await publisher.get_pending_count() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_size_limits_work(self, test_db, session_factory):
        await _stage(test_db, "a.created", "b.created", "c.created")
        publisher = OutboxPublisher(
            publisher_func=AsyncMock(), batch_size=2, session_factory=session_factory
        )

        assert await publisher.process_batch() == 2
        assert await publisher.process_batch() == 1
        assert await publisher.process_batch() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_default_publisher_only_logs(self, test_db, session_factory):
        await _stage(test_db, "payment_intent.created")
        publisher = OutboxPublisher(session_factory=session_factory)

        assert await publisher.process_batch() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_serialize_event(self, test_db):
        await _stage(test_db, "payment_intent.created")
        event = (await test_db.execute(select(OutboxEvent))).scalar_one()

        data = serialize_event(event)

        assert data["event_type"] == "payment_intent.created"
        assert data["payload"] == {"status": "created"}
        uuid.UUID(data["aggregate_id"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_start_stops_when_asked(self, session_factory):
        publisher = OutboxPublisher(
            publisher_func=AsyncMock(), poll_interval_seconds=0, session_factory=session_factory
        )
        original = publisher.process_batch

        async def process_then_stop():
            publisher.stop()
            return await original()

        publisher.process_batch = process_then_stop

        await publisher.start()

        assert publisher._running is False


class TestNotificationClient:
    """HTTP delivery of outbox events."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_posts_json(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["event_type"] = request.headers["x-event-type"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(202)

        client = NotificationClient("http://notify.test/events", transport=httpx.MockTransport(handler))
        await client.publish({"event_type": "payment_intent.succeeded", "aggregate_id": "abc"})
        await client.close()

        assert seen["url"] == "http://notify.test/events"
        assert seen["event_type"] == "payment_intent.succeeded"
        assert seen["body"]["aggregate_id"] == "abc"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = NotificationClient(
            "http://notify.test/events", transport=httpx.MockTransport(lambda r: httpx.Response(500))
        )

        with pytest.raises(NotificationError):
            await client.publish({"event_type": "x"})
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unreachable_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = NotificationClient("http://notify.test/events", transport=httpx.MockTransport(handler))

        with pytest.raises(NotificationError):
            await client.publish({"event_type": "x"})
        await client.close()


class TestWorkerWiring:
    """Publisher construction from settings."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_uses_notification_client_when_configured(self, test_db, session_factory):
        delivered = []

        def handler(request: httpx.Request) -> httpx.Response:
            delivered.append(json.loads(request.content)["event_type"])
            return httpx.Response(200)

        settings = Settings(
            notification_service_url="http://notify.test/events", outbox_batch_size=10
        )
        publisher, client = build_publisher(settings, transport=httpx.MockTransport(handler))
        publisher.session_factory = session_factory
        await _stage(test_db, "payment_intent.refunded")

        assert await publisher.process_batch() == 1
        await client.close()

        assert delivered == ["payment_intent.refunded"]
        assert publisher.batch_size == 10

    @pytest.mark.unit
    def test_logs_only_without_url(self):
        publisher, client = build_publisher(Settings(notification_service_url=None))

        assert client is None
        assert publisher.publisher_func == publisher._default_publisher
