"""
Provider abstraction shared by every payment rail.

Each adapter declares its capabilities (currencies, countries, per-currency
amount limits, payment methods and routing bonuses) and implements the same
async operations, so the router and the payment intent service never deal
with provider-specific payloads.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class PaymentMethod(str, Enum):
    """Payment methods a provider can collect with."""

    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    USSD = "ussd"
    MOBILE_MONEY = "mobile_money"
    SEPA_CREDIT_TRANSFER = "sepa_credit_transfer"
    INSTANT_PAYMENT = "instant_payment"


class PaymentStatus(str, Enum):
    """Normalised payment intent status across providers."""

    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        """Whether the status can no longer change through polling."""
        return self in (
            PaymentStatus.SUCCEEDED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
        )


class ProviderErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class ProviderError(Exception):
    """Base exception for provider API errors."""

    def __init__(
        self,
        message: str,
        error_type: ProviderErrorType,
        provider: str = "",
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize provider error.

        Args:
            message: Error message
            error_type: Classification of error
            provider: Name of the provider that failed
            original_error: Underlying SDK or HTTP exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.provider = provider
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        """Transient and rate-limit errors are worth retrying."""
        return self.error_type is not ProviderErrorType.PERMANENT


@dataclass(frozen=True)
class ProviderCapabilities:
    """
    Static eligibility table and routing bonuses of one provider.

    Amount limits are inclusive and expressed in minor units of the
    currency they are keyed by.
    """

    name: str
    currencies: FrozenSet[str]
    countries: FrozenSet[str]
    min_amounts: Dict[str, int] = field(default_factory=dict)
    max_amounts: Dict[str, int] = field(default_factory=dict)
    payment_methods: FrozenSet[PaymentMethod] = frozenset()
    domestic_countries: FrozenSet[str] = frozenset()
    currency_bonus: Dict[str, int] = field(default_factory=dict)
    country_bonus: Dict[str, int] = field(default_factory=dict)

    def supports(self, currency: str, country: Optional[str], amount_minor: int) -> bool:
        """
        Check whether a payment is eligible for this provider.

        Args:
            currency: ISO 4217 currency code
            country: ISO 3166-1 alpha-2 country code, if known
            amount_minor: Amount in minor units

        Returns:
            bool: True when currency, country and amount limits all match
        """
        currency = currency.upper()
        if currency not in self.currencies:
            return False
        if country and country.upper() not in self.countries:
            return False
        minimum = self.min_amounts.get(currency)
        if minimum is not None and amount_minor < minimum:
            return False
        maximum = self.max_amounts.get(currency)
        if maximum is not None and amount_minor > maximum:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view used by the admin endpoints."""
        return {
            "name": self.name,
            "currencies": sorted(self.currencies),
            "countries": sorted(self.countries),
            "min_amounts": dict(self.min_amounts),
            "max_amounts": dict(self.max_amounts),
            "payment_methods": sorted(m.value for m in self.payment_methods),
            "domestic_countries": sorted(self.domestic_countries),
        }


@dataclass
class PaymentIntentRequest:
    """Request to open a payment intent with a provider."""

    amount_minor: int
    currency: str
    idempotency_key: str
    country: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    description: str = ""
    customer_email: Optional[str] = None
    return_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderPaymentIntent:
    """Provider-side view of a payment intent."""

    provider: str
    reference: str
    status: PaymentStatus
    amount_minor: int
    currency: str
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderRefund:
    """Result of a refund request."""

    provider: str
    refund_reference: str
    payment_reference: str
    status: str
    amount_minor: Optional[int] = None


class PaymentProvider(ABC):
    """Abstract base class for payment providers."""

    capabilities: ProviderCapabilities

    @property
    def name(self) -> str:
        """Provider identifier used in routing and persistence."""
        return self.capabilities.name

    def supports(self, currency: str, country: Optional[str], amount_minor: int) -> bool:
        """Eligibility check delegated to the capability table."""
        return self.capabilities.supports(currency, country, amount_minor)

    @abstractmethod
    async def create_payment_intent(
        self, request: PaymentIntentRequest
    ) -> ProviderPaymentIntent:
        """
        Open a payment with the provider.

        Implementations pass ``request.idempotency_key`` through wherever the
        provider accepts one.

        Raises:
            ProviderError: On provider or transport failure
        """
        ...

    @abstractmethod
    async def get_payment_status(self, reference: str) -> ProviderPaymentIntent:
        """Fetch the current state of a payment by provider reference."""
        ...

    @abstractmethod
    async def refund_payment(
        self, reference: str, amount_minor: Optional[int] = None
    ) -> ProviderRefund:
        """Refund a payment fully, or partially when ``amount_minor`` is given."""
        ...

    async def close(self) -> None:
        """Release network resources held by the adapter."""
        return None
