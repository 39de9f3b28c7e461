"""
Provider webhook handling with signature verification and event deduplication.

Implements:
- Signature verification per provider
- Normalisation into :class:`ProviderEvent`
- Event deduplication (Redis fast path, ``webhook_events`` table as record)
- Routing of event types to settlement and external transaction handlers

A payment is credited at most once however often it is delivered: the
dedup layers skip known events, and the ledger's reference check under the
account lock catches whatever slips past them.
"""
import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_routing.config import get_settings
from payment_routing.core.external_transactions import (
    TRANSACTION_KINDS,
    ExternalTransactionService,
)
from payment_routing.core.ledger import DuplicateReferenceError
from payment_routing.core.payment_intents import PaymentIntentService
from payment_routing.database.models import WebhookEvent
from payment_routing.integrations.signatures import (
    WebhookError,
    WebhookSignatureError,
    verify_flutterwave_hash,
    verify_paystack_signature,
    verify_reloadly_signature,
    verify_stripe_signature,
)
from payment_routing.monitoring.metrics import metrics
from payment_routing.providers import flutterwave, paystack
from payment_routing.providers.base import PaymentStatus
from payment_routing.utils.money import to_minor

logger = structlog.get_logger(__name__)

PROVIDERS = ("stripe", "paystack", "flutterwave", "reloadly")

STRIPE_EVENT_STATUS = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELLED,
    "payment_intent.processing": PaymentStatus.PROCESSING,
}

RELOADLY_EVENTS = tuple(
    f"{kind}.{outcome}" for kind in TRANSACTION_KINDS for outcome in ("success", "failed")
)

# Handler results that must not be recorded, so a redelivery is applied
_UNRECORDED_RESULTS = {"intent_not_found"}

EventHandler = Callable[["ProviderEvent", AsyncSession], Awaitable[Dict[str, Any]]]


@dataclass
class ProviderEvent:
    """A verified webhook event in provider-neutral form."""

    provider: str
    event_id: str
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    reference: Optional[str] = None
    status: Optional[PaymentStatus] = None
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    error_message: Optional[str] = None


def _load_json(payload: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookError("Malformed webhook payload") from e
    if not isinstance(body, dict):
        raise WebhookError("Malformed webhook payload")
    return body


def _payload_digest(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()[:32]


def parse_stripe_event(payload: bytes) -> ProviderEvent:
    body = _load_json(payload)
    event_type = body.get("type", "")
    obj = (body.get("data") or {}).get("object") or {}
    error = obj.get("last_payment_error") or {}
    return ProviderEvent(
        provider="stripe",
        event_id=body.get("id") or _payload_digest(payload),
        event_type=event_type,
        data=obj,
        reference=obj.get("id"),
        status=STRIPE_EVENT_STATUS.get(event_type),
        amount_minor=obj.get("amount"),
        currency=(obj.get("currency") or "").upper() or None,
        error_message=error.get("message"),
    )


def parse_paystack_event(payload: bytes) -> ProviderEvent:
    body = _load_json(payload)
    event_type = body.get("event", "")
    data = body.get("data") or {}
    reference = data.get("reference")
    return ProviderEvent(
        provider="paystack",
        event_id=f"{event_type}:{reference}" if reference else _payload_digest(payload),
        event_type=event_type,
        data=data,
        reference=reference,
        status=paystack.map_status(data.get("status")),
        amount_minor=data.get("amount"),
        currency=(data.get("currency") or "").upper() or None,
        error_message=data.get("gateway_response"),
    )


def parse_flutterwave_event(payload: bytes) -> ProviderEvent:
    body = _load_json(payload)
    event_type = body.get("event", "")
    data = body.get("data") or {}
    currency = (data.get("currency") or "").upper() or None
    amount = data.get("amount")
    return ProviderEvent(
        provider="flutterwave",
        event_id=f"{event_type}:{data['id']}" if data.get("id") is not None else _payload_digest(payload),
        event_type=event_type,
        data=data,
        reference=data.get("tx_ref"),
        status=flutterwave.map_status(data.get("status")),
        amount_minor=to_minor(amount, currency) if amount is not None and currency else None,
        currency=currency,
        error_message=data.get("processor_response"),
    )


def parse_reloadly_event(payload: bytes) -> ProviderEvent:
    body = _load_json(payload)
    event_type = body.get("event") or body.get("type") or ""
    data = body.get("data") or {}
    transaction_id = data.get("transactionId")
    return ProviderEvent(
        provider="reloadly",
        event_id=(
            f"{event_type}:{transaction_id}" if transaction_id is not None else _payload_digest(payload)
        ),
        event_type=event_type,
        data=data,
        reference=str(transaction_id) if transaction_id is not None else None,
    )


class WebhookHandler:
    """
    Verifies, deduplicates and dispatches provider webhooks.

    Handlers are registered per ``(provider, event_type)``; events without
    one are acknowledged and recorded as ``no_handler``.
    """

    def __init__(
        self,
        payment_intents: PaymentIntentService,
        external_transactions: Optional[ExternalTransactionService] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            payment_intents: Service settling payment intents
            external_transactions: Service applying airtime/gift card/bill events
            redis_client: Optional Redis client for event deduplication
        """
        self.settings = get_settings()
        self.payment_intents = payment_intents
        self.external_transactions = external_transactions or ExternalTransactionService(
            ledger=payment_intents.ledger
        )
        self.redis_client = redis_client
        self._owns_client = False
        self.event_handlers: Dict[Tuple[str, str], EventHandler] = {}
        self._register_default_handlers()

        logger.info("webhook_handler_initialized")

    def _register_default_handlers(self) -> None:
        for event_type in STRIPE_EVENT_STATUS:
            self.register_handler("stripe", event_type, self.handle_payment_event)
        self.register_handler("paystack", "charge.success", self.handle_payment_event)
        self.register_handler("flutterwave", "charge.completed", self.handle_payment_event)
        for event_type in RELOADLY_EVENTS:
            self.register_handler("reloadly", event_type, self.handle_external_event)

    def register_handler(self, provider: str, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a provider event type.

        Example:
            async def handle_transfer(event, db):
                ...

            handler.register_handler("paystack", "transfer.success", handle_transfer)
        """
        self.event_handlers[(provider, event_type)] = handler
        logger.debug("webhook_handler_registered", provider=provider, event_type=event_type)

    async def _get_redis(self) -> Optional[aioredis.Redis]:
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_client = True
        return self.redis_client

    def construct_event(
        self, provider: str, payload: bytes, headers: Mapping[str, str]
    ) -> ProviderEvent:
        """
        Verify the signature of a raw delivery and normalise it.

        Args:
            provider: One of ``stripe``, ``paystack``, ``flutterwave``, ``reloadly``
            payload: Raw request body as bytes
            headers: Request headers

        Returns:
            ProviderEvent: Verified event

        Raises:
            WebhookSignatureError: If the signature does not verify
            WebhookNotConfiguredError: If the provider's secret is not set
            WebhookError: If the payload is not a JSON object
        """
        headers = {k.lower(): v for k, v in headers.items()}
        tolerance = self.settings.webhook_tolerance_seconds
        try:
            if provider == "stripe":
                verify_stripe_signature(
                    payload,
                    headers.get("stripe-signature"),
                    self.settings.stripe_webhook_secret,
                    tolerance=tolerance,
                )
                event = parse_stripe_event(payload)
            elif provider == "paystack":
                verify_paystack_signature(
                    payload, headers.get("x-paystack-signature"), self.settings.paystack_secret_key
                )
                event = parse_paystack_event(payload)
            elif provider == "flutterwave":
                verify_flutterwave_hash(
                    headers.get("verif-hash"), self.settings.flutterwave_webhook_hash
                )
                event = parse_flutterwave_event(payload)
            elif provider == "reloadly":
                verify_reloadly_signature(
                    payload,
                    headers.get("x-reloadly-signature") or headers.get("x-webhook-signature"),
                    self.settings.reloadly_webhook_secret,
                    timestamp=headers.get("x-reloadly-timestamp"),
                    tolerance=tolerance,
                )
                event = parse_reloadly_event(payload)
            else:
                raise WebhookError(f"Unknown webhook provider: {provider}")
        except WebhookSignatureError as e:
            metrics.record_webhook_signature_failure(provider)
            logger.error("webhook_signature_verification_failed", provider=provider, error=str(e))
            raise

        logger.info(
            "webhook_signature_verified",
            provider=provider,
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return event

    @staticmethod
    def _dedup_key(event: ProviderEvent) -> str:
        return f"webhook:processed:{event.provider}:{event.event_id}"

    async def is_event_processed(self, event: ProviderEvent, db: AsyncSession) -> bool:
        """Check Redis, then the ``webhook_events`` table."""
        try:
            redis = await self._get_redis()
            if redis is not None and await redis.exists(self._dedup_key(event)):
                return True
        except Exception as e:
            # Redis down: fall through to the database record
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event.event_id)

        result = await db.execute(
            select(WebhookEvent.id).where(
                WebhookEvent.provider == event.provider,
                WebhookEvent.event_id == event.event_id,
            )
        )
        return result.scalar_one_or_none() is not None

    async def mark_event_processed(self, event: ProviderEvent) -> None:
        try:
            redis = await self._get_redis()
            if redis is not None:
                await redis.setex(self._dedup_key(event), self.settings.webhook_dedup_ttl, "1")
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event.event_id)

    async def process_event(self, event: ProviderEvent, db: AsyncSession) -> Dict[str, Any]:
        """
        Process a verified event once.

        Args:
            event: Verified event
            db: Database session; committed here

        Returns:
            Dict[str, Any]: Processing result with a ``status`` of
            ``success``, ``duplicate`` or ``no_handler``

        Raises:
            WebhookError: If the handler failed; the delivery should be retried
        """
        started = time.perf_counter()
        log = logger.bind(
            provider=event.provider, event_id=event.event_id, event_type=event.event_type
        )
        log.info("processing_webhook_event")

        def _done(status: str, **extra: Any) -> Dict[str, Any]:
            metrics.record_webhook_event(
                event.provider, event.event_type, status, time.perf_counter() - started
            )
            return {"status": status, "event_id": event.event_id, "event_type": event.event_type, **extra}

        if await self.is_event_processed(event, db):
            log.info("webhook_event_already_processed")
            return _done("duplicate", message="Event already processed")

        handler = self.event_handlers.get((event.provider, event.event_type))
        if handler is None:
            log.warning("webhook_no_handler")
            await self._record(db, event, "no_handler")
            return _done(
                "no_handler",
                message=f"No handler registered for event type: {event.event_type}",
            )

        try:
            result = await handler(event, db)
        except DuplicateReferenceError:
            # Another delivery of the same payment committed first; session is rolled back
            log.info("webhook_event_applied_concurrently")
            return _done("duplicate", message="Event already processed")
        except Exception as e:
            await db.rollback()
            log.error("webhook_event_processing_failed", error=str(e))
            metrics.record_webhook_event(
                event.provider, event.event_type, "error", time.perf_counter() - started
            )
            raise WebhookError(f"Failed to process event {event.event_id}: {e}") from e

        if result.get("status") in _UNRECORDED_RESULTS:
            await db.commit()
            return _done("ignored", result=result)

        if not await self._record(db, event, "processed"):
            return _done("duplicate", message="Event already processed")

        log.info("webhook_event_processed_successfully")
        return _done("success", result=result)

    async def _record(self, db: AsyncSession, event: ProviderEvent, status: str) -> bool:
        """Insert the dedup row and commit; False if a concurrent delivery recorded it first."""
        db.add(
            WebhookEvent(
                provider=event.provider,
                event_id=event.event_id,
                event_type=event.event_type,
                status=status,
            )
        )
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("webhook_event_recorded_concurrently", event_id=event.event_id)
            return False
        await self.mark_event_processed(event)
        return True

    async def handle_payment_event(self, event: ProviderEvent, db: AsyncSession) -> Dict[str, Any]:
        """Settle the payment intent the event refers to."""
        log = logger.bind(provider=event.provider, reference=event.reference)
        if not event.reference or event.status is None:
            log.warning("webhook_payment_event_incomplete")
            return {"status": "skipped", "reason": "No reference or status"}

        intent = await self.payment_intents.find_by_provider_reference(
            db, event.provider, event.reference
        )
        if intent is None:
            log.warning("payment_intent_not_found_for_webhook")
            return {"status": "intent_not_found", "reference": event.reference}

        if event.status is PaymentStatus.SUCCEEDED and not self._amount_matches(intent, event):
            log.error(
                "webhook_amount_mismatch",
                expected_minor=intent.amount_minor,
                expected_currency=intent.currency,
                reported_minor=event.amount_minor,
                reported_currency=event.currency,
            )
            return {"status": "amount_mismatch", "payment_intent_id": str(intent.id)}

        ledger_result = await self.payment_intents.settle(
            db, intent, event.status, error_message=event.error_message
        )
        return {
            "status": intent.status,
            "payment_intent_id": str(intent.id),
            "credited": bool(ledger_result and ledger_result.applied),
        }

    @staticmethod
    def _amount_matches(intent: Any, event: ProviderEvent) -> bool:
        if event.currency is not None and event.currency != intent.currency:
            return False
        return event.amount_minor is None or event.amount_minor >= intent.amount_minor

    async def handle_external_event(self, event: ProviderEvent, db: AsyncSession) -> Dict[str, Any]:
        """Upsert the external transaction and refund failed purchases."""
        result = await self.external_transactions.handle_event(db, event.event_type, event.data)
        return result.to_dict()

    async def close(self) -> None:
        """Close the Redis connection if this handler opened it."""
        if self.redis_client is not None and self._owns_client:
            await self.redis_client.aclose()
            self.redis_client = None
            self._owns_client = False
