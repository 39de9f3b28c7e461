"""
Payment intent service: routes, opens and settles payments.

Orchestrates the payment flow:
1. Validate input
2. Check idempotency
3. Route to a provider
4. Open the intent with the provider
5. Persist the intent and an outbox event
6. Commit and cache the response

Settlement (from webhooks or polling) credits the intent's wallet account
through the ledger, keyed by the provider reference, so a payment is
credited once no matter how many times it is reported.
"""
import asyncio
import time
import uuid
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_routing.config import get_settings
from payment_routing.core.idempotency import (
    IdempotencyManager,
    ensure_same_request,
    intent_to_dict,
    scoped_key,
)
from payment_routing.core.ledger import LedgerResult, LedgerService
from payment_routing.core.outbox import add_outbox_event
from payment_routing.core.router import RoutingDecision, determine_optimal_provider
from payment_routing.database.models import PaymentIntent
from payment_routing.monitoring.metrics import metrics
from payment_routing.providers.base import (
    PaymentIntentRequest,
    PaymentMethod,
    PaymentStatus,
    ProviderError,
    ProviderErrorType,
)
from payment_routing.providers.registry import ProviderRegistry

logger = structlog.get_logger(__name__)

# Statuses a later report may not move an intent away from
_FINAL_STATUSES = {PaymentStatus.SUCCEEDED.value, PaymentStatus.REFUNDED.value}

# Scoped keys must fit payment_intents.idempotency_key alongside the user id
MAX_CLIENT_KEY_LENGTH = 120


class PaymentIntentError(Exception):
    """Base exception for payment intent errors."""

    pass


class PaymentIntentValidationError(PaymentIntentError):
    """Raised when payment intent input validation fails."""

    pass


class PaymentIntentNotFoundError(PaymentIntentError):
    """Raised when a payment intent does not exist."""

    pass


class PaymentIntentStateError(PaymentIntentError):
    """Raised when an operation is not allowed in the intent's current status."""

    pass


class ProviderUnavailableError(PaymentIntentError):
    """Raised when the provider failed transiently; the request can be retried."""

    def __init__(self, message: str, provider_error: ProviderError):
        super().__init__(message)
        self.provider_error = provider_error


def settlement_reference(intent: PaymentIntent) -> str:
    """Ledger reference for crediting a settled intent."""
    return f"payment_intent:{intent.provider}:{intent.provider_reference or intent.id}"


def refund_reference(intent: PaymentIntent) -> str:
    """Ledger reference for reversing a refunded intent."""
    return f"refund:{intent.id}"


class PaymentIntentService:
    """
    Payment intent lifecycle.

    Handles creation with idempotency and routing, status refresh by polling,
    refunds, and settlement into the wallet ledger.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        idempotency_manager: Optional[IdempotencyManager] = None,
        ledger: Optional[LedgerService] = None,
    ):
        """
        Initialize payment intent service.

        Args:
            registry: Providers available for routing
            idempotency_manager: Optional idempotency manager
            ledger: Optional ledger service
        """
        self.registry = registry
        self.idempotency_manager = idempotency_manager or IdempotencyManager()
        self.ledger = ledger or LedgerService()

    @staticmethod
    def _validate(
        amount_minor: int, currency: str, country: Optional[str]
    ) -> None:
        if amount_minor <= 0:
            raise PaymentIntentValidationError("Amount must be positive")
        if len(currency) != 3 or not currency.isalpha():
            raise PaymentIntentValidationError(f"Invalid currency code: {currency}")
        if country is not None and (len(country) != 2 or not country.isalpha()):
            raise PaymentIntentValidationError(f"Invalid country code: {country}")

    def quote(
        self,
        currency: str,
        amount_minor: int,
        country: Optional[str] = None,
        payment_method: Optional[PaymentMethod] = None,
        preferred_provider: Optional[str] = None,
    ) -> RoutingDecision:
        """Routing decision without side effects."""
        self._validate(amount_minor, currency, country)
        return determine_optimal_provider(
            self.registry,
            currency=currency,
            amount_minor=amount_minor,
            country=country,
            payment_method=payment_method,
            preferred_provider=preferred_provider,
        )

    async def create_payment_intent(
        self,
        db: AsyncSession,
        user_id: str,
        amount_minor: int,
        currency: str,
        account_id: Optional[uuid.UUID] = None,
        country: Optional[str] = None,
        payment_method: Optional[PaymentMethod] = None,
        idempotency_key: Optional[str] = None,
        preferred_provider: Optional[str] = None,
        customer_email: Optional[str] = None,
        description: str = "",
        return_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create a payment intent with idempotency and routing.

        Args:
            db: Database session
            user_id: Paying user
            amount_minor: Amount in minor units
            currency: ISO 4217 currency code
            account_id: Wallet account credited when the payment succeeds
            country: Payer country, used for routing
            payment_method: Requested payment method, used for routing
            idempotency_key: Client key, scoped to the user; derived from the
                request when omitted
            preferred_provider: Explicit provider override
            customer_email: Payer email (required by some providers)
            description: Shown to the payer where the provider supports it
            return_url: Where the provider sends the payer after checkout
            metadata: Free-form data forwarded to the provider

        Returns:
            Dict[str, Any]: Payment intent response; a provider decline is
            returned as a ``failed`` intent

        Raises:
            PaymentIntentValidationError: If input validation fails
            IdempotencyConflictError: If the key was used for another request
            NoEligibleProviderError: If no provider can take the payment
            ProviderUnavailableError: If the provider failed transiently
        """
        started = time.perf_counter()
        currency = currency.upper()
        country = country.upper() if country else None
        metadata = metadata or {}

        self._validate(amount_minor, currency, country)

        if account_id is not None:
            account = await self.ledger.get_account(db, account_id)
            if account.user_id != user_id:
                raise PaymentIntentValidationError("Account does not belong to user")
            if account.currency != currency:
                raise PaymentIntentValidationError(
                    f"Account currency {account.currency} does not match {currency}"
                )

        if idempotency_key:
            if len(idempotency_key) > MAX_CLIENT_KEY_LENGTH:
                raise PaymentIntentValidationError(
                    f"Idempotency key longer than {MAX_CLIENT_KEY_LENGTH} characters"
                )
            idempotency_key = scoped_key(user_id, idempotency_key)
        else:
            idempotency_key = IdempotencyManager.generate_key(
                user_id=user_id,
                amount_minor=amount_minor,
                currency=currency,
                account_id=str(account_id) if account_id else None,
                metadata=metadata,
            )

        log = logger.bind(user_id=user_id, idempotency_key=idempotency_key)
        log.info(
            "payment_intent_creation_started",
            amount_minor=amount_minor,
            currency=currency,
            country=country,
        )

        fingerprint = (amount_minor, currency, str(account_id) if account_id else None)
        cached_response = await self.idempotency_manager.check_idempotency(idempotency_key, db)
        if cached_response:
            ensure_same_request(cached_response, *fingerprint)
            log.info("payment_intent_idempotent_return", payment_intent_id=cached_response["id"])
            return cached_response

        decision = determine_optimal_provider(
            self.registry,
            currency=currency,
            amount_minor=amount_minor,
            country=country,
            payment_method=payment_method,
            preferred_provider=preferred_provider,
        )
        provider = self.registry.get(decision.provider)

        intent_id = uuid.uuid4()
        intent = PaymentIntent(
            id=intent_id,
            idempotency_key=idempotency_key,
            user_id=user_id,
            account_id=account_id,
            provider=provider.name,
            amount_minor=amount_minor,
            currency=currency,
            country=country,
            payment_method=payment_method.value if payment_method else None,
            status=PaymentStatus.PENDING.value,
            routing_score=decision.score,
            details={"routing": decision.to_dict(), "metadata": metadata},
        )

        request = PaymentIntentRequest(
            amount_minor=amount_minor,
            currency=currency,
            idempotency_key=idempotency_key,
            country=country,
            payment_method=payment_method,
            description=description,
            customer_email=customer_email,
            return_url=return_url,
            metadata={**metadata, "payment_intent_id": str(intent_id), "user_id": user_id},
        )

        try:
            provider_intent = await provider.create_payment_intent(request)
        except ProviderError as e:
            if e.error_type is not ProviderErrorType.PERMANENT:
                log.error(
                    "payment_intent_provider_unavailable",
                    provider=provider.name,
                    error=str(e),
                    error_type=e.error_type.value,
                )
                raise ProviderUnavailableError(
                    f"{provider.name} is temporarily unavailable", e
                ) from e

            log.warning("payment_intent_declined", provider=provider.name, error=str(e))
            intent.status = PaymentStatus.FAILED.value
            intent.error_message = str(e)
        else:
            intent.provider_reference = provider_intent.reference
            intent.status = provider_intent.status.value
            intent.client_secret = provider_intent.client_secret
            intent.checkout_url = provider_intent.checkout_url

        db.add(intent)
        try:
            await db.flush()
        except IntegrityError:
            # A concurrent request with the same key won the insert
            await db.rollback()
            existing = await self.idempotency_manager.check_idempotency(idempotency_key, db)
            if existing:
                ensure_same_request(existing, *fingerprint)
                return existing
            raise

        add_outbox_event(
            db,
            aggregate_id=intent.id,
            aggregate_type="payment_intent",
            event_type=f"payment_intent.{'failed' if intent.status == 'failed' else 'created'}",
            payload=self._event_payload(intent),
        )

        if intent.status == PaymentStatus.SUCCEEDED.value:
            await self.settle(db, intent, PaymentStatus.SUCCEEDED)

        await db.commit()

        response = intent_to_dict(intent)
        await self.idempotency_manager.store_response(idempotency_key, response)

        metrics.record_payment_intent(
            provider.name, intent.status, currency, amount_minor, time.perf_counter() - started
        )
        log.info(
            "payment_intent_created",
            payment_intent_id=str(intent.id),
            provider=provider.name,
            provider_reference=intent.provider_reference,
            status=intent.status,
        )
        return response

    @staticmethod
    def _event_payload(intent: PaymentIntent) -> Dict[str, Any]:
        return {
            "payment_intent_id": str(intent.id),
            "user_id": intent.user_id,
            "account_id": str(intent.account_id) if intent.account_id else None,
            "provider": intent.provider,
            "provider_reference": intent.provider_reference,
            "amount_minor": intent.amount_minor,
            "currency": intent.currency,
            "status": intent.status,
        }

    async def get_payment_intent(self, db: AsyncSession, intent_id: uuid.UUID) -> PaymentIntent:
        """
        Fetch a payment intent.

        Raises:
            PaymentIntentNotFoundError: If no such intent exists
        """
        intent = await db.get(PaymentIntent, intent_id)
        if intent is None:
            raise PaymentIntentNotFoundError(f"Payment intent {intent_id} not found")
        return intent

    async def find_by_provider_reference(
        self, db: AsyncSession, provider: str, reference: str
    ) -> Optional[PaymentIntent]:
        result = await db.execute(
            select(PaymentIntent).where(
                PaymentIntent.provider == provider,
                PaymentIntent.provider_reference == reference,
            )
        )
        return result.scalar_one_or_none()

    async def settle(
        self,
        db: AsyncSession,
        intent: PaymentIntent,
        status: PaymentStatus,
        error_message: Optional[str] = None,
    ) -> Optional[LedgerResult]:
        """
        Apply a provider-reported status to an intent.

        On ``succeeded`` the intent's account is credited once, keyed by the
        provider reference. Succeeded and refunded intents never move back
        to an earlier status. Does not commit.

        Returns:
            Optional[LedgerResult]: The credit outcome when one was attempted
        """
        log = logger.bind(
            payment_intent_id=str(intent.id),
            provider=intent.provider,
            from_status=intent.status,
            to_status=status.value,
        )

        if intent.status in _FINAL_STATUSES and status is not PaymentStatus.SUCCEEDED:
            if status is not PaymentStatus.REFUNDED:
                log.info("payment_intent_status_change_ignored")
                return None

        ledger_result = None
        if status is PaymentStatus.SUCCEEDED and intent.account_id is not None:
            ledger_result = await self.ledger.credit_account(
                db,
                account_id=intent.account_id,
                amount_minor=intent.amount_minor,
                currency=intent.currency,
                description=f"Payment via {intent.provider}",
                reference_id=settlement_reference(intent),
            )

        previous = intent.status
        if previous != status.value and not (
            previous == PaymentStatus.REFUNDED.value and status is PaymentStatus.SUCCEEDED
        ):
            intent.status = status.value
            if error_message:
                intent.error_message = error_message
            add_outbox_event(
                db,
                aggregate_id=intent.id,
                aggregate_type="payment_intent",
                event_type=f"payment_intent.{status.value}",
                payload=self._event_payload(intent),
            )
            await db.flush()
            await self.idempotency_manager.invalidate(intent.idempotency_key)

        log.info(
            "payment_intent_settled",
            credited=bool(ledger_result and ledger_result.applied),
            duplicate=bool(ledger_result and ledger_result.duplicate),
        )
        return ledger_result

    async def refresh_payment_intent(
        self, db: AsyncSession, intent_id: uuid.UUID
    ) -> PaymentIntent:
        """
        Poll the provider and settle the intent with the reported status.

        Raises:
            PaymentIntentNotFoundError: If no such intent exists
            ProviderUnavailableError: If the provider could not be reached
        """
        intent = await self.get_payment_intent(db, intent_id)
        if PaymentStatus(intent.status).is_terminal or not intent.provider_reference:
            return intent

        provider = self.registry.get(intent.provider)
        try:
            provider_intent = await provider.get_payment_status(intent.provider_reference)
        except ProviderError as e:
            raise ProviderUnavailableError(f"Could not refresh from {intent.provider}", e) from e

        if provider_intent.status.value != intent.status:
            await self.settle(db, intent, provider_intent.status)
            await db.commit()
        return intent

    async def refund_payment_intent(
        self,
        db: AsyncSession,
        intent_id: uuid.UUID,
        amount_minor: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Refund a succeeded intent.

        The wallet debit is taken under the account lock before the provider
        is asked, so a balance that was already spent blocks the refund.

        Raises:
            PaymentIntentStateError: If the intent has not succeeded
            PaymentIntentValidationError: If the amount exceeds the payment
            InsufficientFundsError: If the wallet no longer holds the funds
            ProviderUnavailableError: If the provider refund failed
        """
        intent = await self.get_payment_intent(db, intent_id)
        if intent.status != PaymentStatus.SUCCEEDED.value:
            raise PaymentIntentStateError(f"Cannot refund payment intent in status {intent.status}")
        if not intent.provider_reference:
            raise PaymentIntentStateError("Payment intent has no provider reference")

        refund_amount = amount_minor or intent.amount_minor
        if refund_amount <= 0 or refund_amount > intent.amount_minor:
            raise PaymentIntentValidationError(
                f"Refund amount must be between 1 and {intent.amount_minor}"
            )

        if intent.account_id is not None:
            await self.ledger.debit_account(
                db,
                account_id=intent.account_id,
                amount_minor=refund_amount,
                currency=intent.currency,
                description=f"Refund of payment via {intent.provider}",
                reference_id=refund_reference(intent),
            )

        provider = self.registry.get(intent.provider)
        timeout = get_settings().provider_refund_timeout_seconds
        try:
            # The account row stays locked until the provider answers
            refund = await asyncio.wait_for(
                provider.refund_payment(intent.provider_reference, refund_amount), timeout
            )
        except asyncio.TimeoutError as e:
            await db.rollback()
            logger.error(
                "payment_intent_refund_timeout",
                payment_intent_id=str(intent_id),
                provider=provider.name,
                timeout_seconds=timeout,
            )
            raise ProviderUnavailableError(
                f"Refund timed out at {provider.name}",
                ProviderError("Refund timed out", ProviderErrorType.TRANSIENT, provider=provider.name),
            ) from e
        except ProviderError as e:
            # Rollback expires the intent; only plain values are used below
            await db.rollback()
            logger.error(
                "payment_intent_refund_failed",
                payment_intent_id=str(intent_id),
                provider=provider.name,
                error=str(e),
            )
            if e.error_type is ProviderErrorType.PERMANENT:
                raise PaymentIntentStateError(f"Refund rejected by {e.provider}: {e}") from e
            raise ProviderUnavailableError(f"Refund failed at {e.provider}", e) from e

        intent.status = PaymentStatus.REFUNDED.value
        add_outbox_event(
            db,
            aggregate_id=intent.id,
            aggregate_type="payment_intent",
            event_type="payment_intent.refunded",
            payload={**self._event_payload(intent), "refund_amount_minor": refund_amount},
        )
        await db.commit()
        await self.idempotency_manager.invalidate(intent.idempotency_key)

        logger.info(
            "payment_intent_refunded",
            payment_intent_id=str(intent.id),
            refund_reference=refund.refund_reference,
            amount_minor=refund_amount,
        )
        return {
            "payment_intent_id": str(intent.id),
            "refund_reference": refund.refund_reference,
            "status": refund.status,
            "amount_minor": refund_amount,
        }
