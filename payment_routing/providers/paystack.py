"""Paystack adapter (Nigeria, Ghana, South Africa) over the REST API."""
import hashlib
from typing import Any, Dict, Optional

import structlog

from .base import (
    PaymentIntentRequest,
    PaymentMethod,
    PaymentStatus,
    ProviderCapabilities,
    ProviderError,
    ProviderErrorType,
    ProviderPaymentIntent,
    ProviderRefund,
)
from .http import HTTPPaymentProvider

logger = structlog.get_logger(__name__)

PAYSTACK_CAPABILITIES = ProviderCapabilities(
    name="paystack",
    currencies=frozenset({"NGN", "GHS", "ZAR"}),
    countries=frozenset({"NG", "GH", "ZA"}),
    min_amounts={"NGN": 5_000, "GHS": 100, "ZAR": 100},
    max_amounts={"NGN": 1_000_000_000, "GHS": 10_000_000, "ZAR": 50_000_000},
    payment_methods=frozenset(
        {
            PaymentMethod.CARD,
            PaymentMethod.BANK_TRANSFER,
            PaymentMethod.USSD,
            PaymentMethod.MOBILE_MONEY,
        }
    ),
    domestic_countries=frozenset({"NG", "GH", "ZA"}),
    currency_bonus={"NGN": 15, "GHS": 10},
    country_bonus={"NG": 10, "GH": 5},
)

# Paystack transaction status -> normalised status
STATUS_MAP = {
    "success": PaymentStatus.SUCCEEDED,
    "failed": PaymentStatus.FAILED,
    "abandoned": PaymentStatus.CANCELLED,
    "reversed": PaymentStatus.REFUNDED,
    "ongoing": PaymentStatus.REQUIRES_ACTION,
    "send_otp": PaymentStatus.REQUIRES_ACTION,
    "processing": PaymentStatus.PROCESSING,
    "queued": PaymentStatus.PROCESSING,
    "pending": PaymentStatus.PENDING,
}

CHANNELS = {
    PaymentMethod.CARD: "card",
    PaymentMethod.BANK_TRANSFER: "bank_transfer",
    PaymentMethod.USSD: "ussd",
    PaymentMethod.MOBILE_MONEY: "mobile_money",
}


def map_status(status: Optional[str]) -> PaymentStatus:
    return STATUS_MAP.get((status or "").lower(), PaymentStatus.PENDING)


def reference_for(idempotency_key: str) -> str:
    """Deterministic transaction reference; Paystack rejects reused references."""
    return "pst_" + hashlib.sha256(idempotency_key.encode()).hexdigest()[:28]


class PaystackProvider(HTTPPaymentProvider):
    """Paystack Standard checkout: initialize, verify, refund."""

    capabilities = PAYSTACK_CAPABILITIES

    def __init__(self, secret_key: str, base_url: str = "https://api.paystack.co", **kwargs: Any):
        super().__init__(base_url=base_url, secret_key=secret_key, **kwargs)

    async def create_payment_intent(
        self, request: PaymentIntentRequest
    ) -> ProviderPaymentIntent:
        if not request.customer_email:
            raise ProviderError(
                "Paystack requires a customer email",
                ProviderErrorType.PERMANENT,
                provider=self.name,
            )

        reference = reference_for(request.idempotency_key)
        payload: Dict[str, Any] = {
            "email": request.customer_email,
            "amount": request.amount_minor,
            "currency": request.currency.upper(),
            "reference": reference,
            "metadata": {**request.metadata, "description": request.description},
        }
        if request.return_url:
            payload["callback_url"] = request.return_url
        if request.payment_method in CHANNELS:
            payload["channels"] = [CHANNELS[request.payment_method]]

        logger.info(
            "paystack_initializing_transaction",
            reference=reference,
            amount_minor=request.amount_minor,
            currency=request.currency,
        )
        body = await self._request("POST", "/transaction/initialize", "create_intent", json=payload)
        data = body.get("data") or {}

        return ProviderPaymentIntent(
            provider=self.name,
            reference=data.get("reference", reference),
            status=PaymentStatus.REQUIRES_ACTION,
            amount_minor=request.amount_minor,
            currency=request.currency.upper(),
            client_secret=data.get("access_code"),
            checkout_url=data.get("authorization_url"),
            raw=data,
        )

    async def get_payment_status(self, reference: str) -> ProviderPaymentIntent:
        body = await self._request("GET", f"/transaction/verify/{reference}", "retrieve")
        data = body.get("data") or {}
        return ProviderPaymentIntent(
            provider=self.name,
            reference=data.get("reference", reference),
            status=map_status(data.get("status")),
            amount_minor=int(data.get("amount") or 0),
            currency=(data.get("currency") or "").upper(),
            raw=data,
        )

    async def refund_payment(
        self, reference: str, amount_minor: Optional[int] = None
    ) -> ProviderRefund:
        payload: Dict[str, Any] = {"transaction": reference}
        if amount_minor:
            payload["amount"] = amount_minor

        logger.info("paystack_creating_refund", reference=reference, amount_minor=amount_minor)
        body = await self._request("POST", "/refund", "refund", json=payload)
        data = body.get("data") or {}
        return ProviderRefund(
            provider=self.name,
            refund_reference=str(data.get("id", "")),
            payment_reference=reference,
            status=data.get("status", "pending"),
            amount_minor=data.get("amount", amount_minor),
        )
