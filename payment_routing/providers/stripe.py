"""
Stripe adapter built on the official SDK.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotent payment intent creation
"""
import asyncio
import threading
import time
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from payment_routing.monitoring.metrics import metrics

from .base import (
    PaymentIntentRequest,
    PaymentMethod,
    PaymentProvider,
    PaymentStatus,
    ProviderCapabilities,
    ProviderError,
    ProviderErrorType,
    ProviderPaymentIntent,
    ProviderRefund,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

STRIPE_CAPABILITIES = ProviderCapabilities(
    name="stripe",
    currencies=frozenset({"USD", "EUR", "GBP", "CAD", "AUD"}),
    countries=frozenset({"US", "GB", "CA", "AU", "IE", "DE", "FR", "NL", "ES", "IT"}),
    # Stripe's minimum charge is 0.50 in most currencies
    min_amounts={"USD": 50, "EUR": 50, "GBP": 30, "CAD": 50, "AUD": 50},
    max_amounts={"USD": 99_999_999, "EUR": 99_999_999, "GBP": 99_999_999, "CAD": 99_999_999, "AUD": 99_999_999},
    payment_methods=frozenset({PaymentMethod.CARD}),
    domestic_countries=frozenset({"US", "GB", "CA", "AU"}),
    currency_bonus={"USD": 10, "EUR": 5, "GBP": 5},
    country_bonus={"US": 10, "GB": 5},
)

# Stripe PaymentIntent status -> normalised status
STATUS_MAP = {
    "requires_payment_method": PaymentStatus.REQUIRES_ACTION,
    "requires_confirmation": PaymentStatus.REQUIRES_ACTION,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELLED,
}


def map_status(status: Optional[str]) -> PaymentStatus:
    return STATUS_MAP.get(status or "", PaymentStatus.PENDING)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.

    Calls arrive from worker threads, so state and counters only change
    under ``_lock``. The wrapped call itself runs outside the lock.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._lock = threading.Lock()

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Execute function with circuit breaker protection.

        Raises:
            ProviderError: If circuit is open
        """
        with self._lock:
            if self.state == "open":
                if (
                    self.last_failure_time
                    and time.monotonic() - self.last_failure_time > self.timeout
                ):
                    self._set_state("half_open")
                    self.success_count = 0
                    logger.info("circuit_breaker_half_open")
                else:
                    raise ProviderError(
                        "Circuit breaker is open",
                        ProviderErrorType.TRANSIENT,
                        provider="stripe",
                    )

        try:
            result = func(*args, **kwargs)
        except stripe.InvalidRequestError:
            # Caller mistakes say nothing about Stripe's health
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        with self._lock:
            self.failure_count = 0
            if self.state == "half_open":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._set_state("closed")
                    logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.monotonic()
            if self.state == "half_open" or self.failure_count >= self.failure_threshold:
                self._set_state("open")
                logger.warning(
                    "circuit_breaker_opened",
                    failure_count=self.failure_count,
                )


class StripeProvider(PaymentProvider):
    """
    Stripe PaymentIntents with production-grade error handling.

    SDK calls are blocking, so they run in a worker thread behind the
    circuit breaker.
    """

    capabilities = STRIPE_CAPABILITIES

    def __init__(
        self,
        secret_key: str,
        api_version: Optional[str] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret API key
            api_version: Pinned Stripe API version
            circuit_breaker: Optional breaker (a fresh one by default)
        """
        stripe.api_key = secret_key
        if api_version:
            stripe.api_version = api_version
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_provider_initialized",
            api_version=stripe.api_version,
            test_mode=secret_key.startswith("sk_test_"),
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> ProviderErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            ProviderErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return ProviderErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return ProviderErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return ProviderErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return ProviderErrorType.TRANSIENT

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        started = time.perf_counter()
        try:
            result = await asyncio.to_thread(self.circuit_breaker.call, func)
        except stripe.StripeError as e:
            error_type = self._classify_error(e)
            metrics.record_provider_api_call(
                self.name, operation, "error", time.perf_counter() - started
            )
            metrics.record_provider_api_error(self.name, error_type.value)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise ProviderError(
                str(e), error_type, provider=self.name, original_error=e
            ) from e

        metrics.record_provider_api_call(
            self.name, operation, "success", time.perf_counter() - started
        )
        return result

    @staticmethod
    def _to_intent(payment_intent: Any) -> ProviderPaymentIntent:
        return ProviderPaymentIntent(
            provider="stripe",
            reference=payment_intent["id"],
            status=map_status(payment_intent["status"]),
            amount_minor=int(payment_intent["amount"]),
            currency=str(payment_intent["currency"]).upper(),
            client_secret=payment_intent.get("client_secret"),
            raw={"status": payment_intent["status"]},
        )

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def create_payment_intent(
        self, request: PaymentIntentRequest
    ) -> ProviderPaymentIntent:
        """
        Create a Stripe PaymentIntent with idempotency.

        The idempotency key is forwarded to Stripe, so retries of the same
        request never create a second intent.
        """
        logger.info(
            "stripe_creating_payment_intent",
            amount_minor=request.amount_minor,
            currency=request.currency,
            idempotency_key=request.idempotency_key,
        )

        def _create() -> Any:
            params: Dict[str, Any] = {
                "amount": request.amount_minor,
                "currency": request.currency.lower(),
                "idempotency_key": request.idempotency_key,
                # Stripe metadata values must be strings
                "metadata": {k: str(v) for k, v in request.metadata.items()},
                "automatic_payment_methods": {"enabled": True},
            }
            if request.description:
                params["description"] = request.description
            if request.customer_email:
                params["receipt_email"] = request.customer_email
            return stripe.PaymentIntent.create(**params)

        payment_intent = await self._call("create_intent", _create)
        logger.info(
            "stripe_payment_intent_created",
            payment_intent_id=payment_intent["id"],
            status=payment_intent["status"],
        )
        return self._to_intent(payment_intent)

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def get_payment_status(self, reference: str) -> ProviderPaymentIntent:
        """Retrieve a PaymentIntent by ID."""
        payment_intent = await self._call(
            "retrieve", lambda: stripe.PaymentIntent.retrieve(reference)
        )
        return self._to_intent(payment_intent)

    async def refund_payment(
        self, reference: str, amount_minor: Optional[int] = None
    ) -> ProviderRefund:
        """
        Create a refund for a payment.

        Args:
            reference: Stripe PaymentIntent ID
            amount_minor: Optional partial refund amount

        Returns:
            ProviderRefund: Created refund
        """
        logger.info("stripe_creating_refund", payment_intent_id=reference, amount_minor=amount_minor)

        def _create_refund() -> Any:
            params: Dict[str, Any] = {
                "payment_intent": reference,
                "idempotency_key": f"refund:{reference}:{amount_minor or 'full'}",
            }
            if amount_minor:
                params["amount"] = amount_minor
            return stripe.Refund.create(**params)

        refund = await self._call("refund", _create_refund)
        logger.info("stripe_refund_created", refund_id=refund["id"], status=refund["status"])
        return ProviderRefund(
            provider=self.name,
            refund_reference=refund["id"],
            payment_reference=reference,
            status=refund["status"],
            amount_minor=refund.get("amount"),
        )
