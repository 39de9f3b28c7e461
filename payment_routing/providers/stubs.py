"""
Bank rails without an API integration yet (SEPA credit transfer, FedNow).

Both accept the instruction locally and hand back a pending intent with a
generated reference; settlement arrives later through reconciliation or a
bank webhook. Nothing here calls out.
"""
import uuid
from typing import Optional

import structlog

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

SEPA_COUNTRIES = frozenset(
    {
        "AT", "BE", "BG", "CH", "CY", "CZ", "DE", "DK", "EE", "ES", "FI", "FR",
        "GB", "GR", "HR", "HU", "IE", "IS", "IT", "LI", "LT", "LU", "LV", "MC",
        "MT", "NL", "NO", "PL", "PT", "RO", "SE", "SI", "SK",
    }
)

SEPA_CAPABILITIES = ProviderCapabilities(
    name="sepa",
    currencies=frozenset({"EUR"}),
    countries=SEPA_COUNTRIES,
    min_amounts={"EUR": 1},
    max_amounts={"EUR": 99_999_999_999},
    payment_methods=frozenset(
        {PaymentMethod.SEPA_CREDIT_TRANSFER, PaymentMethod.BANK_TRANSFER}
    ),
    domestic_countries=SEPA_COUNTRIES,
    currency_bonus={"EUR": 15},
)

FEDNOW_CAPABILITIES = ProviderCapabilities(
    name="fednow",
    currencies=frozenset({"USD"}),
    countries=frozenset({"US"}),
    min_amounts={"USD": 1},
    # FedNow default network transaction limit is $500,000
    max_amounts={"USD": 50_000_000},
    payment_methods=frozenset({PaymentMethod.INSTANT_PAYMENT, PaymentMethod.BANK_TRANSFER}),
    domestic_countries=frozenset({"US"}),
    currency_bonus={"USD": 15},
)


class LocalRailProvider(PaymentProvider):
    """Accepts instructions without keeping them and always reports them as pending."""

    reference_prefix = "rail"

    async def create_payment_intent(
        self, request: PaymentIntentRequest
    ) -> ProviderPaymentIntent:
        reference = f"{self.reference_prefix}_{uuid.uuid4().hex}"
        intent = ProviderPaymentIntent(
            provider=self.name,
            reference=reference,
            status=PaymentStatus.PENDING,
            amount_minor=request.amount_minor,
            currency=request.currency.upper(),
            raw={"idempotency_key": request.idempotency_key},
        )
        logger.info(
            "rail_instruction_accepted",
            provider=self.name,
            reference=reference,
            amount_minor=request.amount_minor,
        )
        return intent

    async def get_payment_status(self, reference: str) -> ProviderPaymentIntent:
        # Settlement is only learned from reconciliation or a bank webhook
        return ProviderPaymentIntent(
            provider=self.name,
            reference=reference,
            status=PaymentStatus.PENDING,
            amount_minor=0,
            currency="",
        )

    async def refund_payment(
        self, reference: str, amount_minor: Optional[int] = None
    ) -> ProviderRefund:
        raise ProviderError(
            f"{self.name} transfers cannot be refunded through the API",
            ProviderErrorType.PERMANENT,
            provider=self.name,
        )


class SEPAProvider(LocalRailProvider):
    """SEPA credit transfer rail."""

    capabilities = SEPA_CAPABILITIES
    reference_prefix = "sepa"


class FedNowProvider(LocalRailProvider):
    """FedNow instant payment rail."""

    capabilities = FEDNOW_CAPABILITIES
    reference_prefix = "fednow"
