"""
Flutterwave adapter over the v3 REST API.

Flutterwave speaks major units, so amounts are converted at this boundary.
Limits below come from the per-currency limits Flutterwave applies to
hosted payments.
"""
from typing import Any, Dict, Optional

import structlog

from payment_routing.utils.money import from_minor, to_minor

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

# Major-unit limits per currency
_MIN_MAJOR = {"NGN": 100, "USD": 1, "GHS": 1, "KES": 100, "UGX": 1000, "TZS": 1000, "ZAR": 10}
_MAX_MAJOR = {
    "NGN": 100_000_000,
    "USD": 100_000,
    "GHS": 100_000,
    "KES": 10_000_000,
    "UGX": 100_000_000,
    "TZS": 100_000_000,
    "ZAR": 1_000_000,
}

FLUTTERWAVE_CAPABILITIES = ProviderCapabilities(
    name="flutterwave",
    currencies=frozenset(_MIN_MAJOR),
    countries=frozenset({"NG", "GH", "KE", "UG", "TZ", "ZA"}),
    min_amounts={c: to_minor(v, c) for c, v in _MIN_MAJOR.items()},
    max_amounts={c: to_minor(v, c) for c, v in _MAX_MAJOR.items()},
    payment_methods=frozenset(
        {
            PaymentMethod.CARD,
            PaymentMethod.BANK_TRANSFER,
            PaymentMethod.USSD,
            PaymentMethod.MOBILE_MONEY,
        }
    ),
    domestic_countries=frozenset({"NG", "KE", "UG", "TZ"}),
    currency_bonus={"KES": 15, "NGN": 10, "UGX": 10, "TZS": 10},
    country_bonus={"KE": 10, "UG": 5, "TZ": 5},
)

STATUS_MAP = {
    "successful": PaymentStatus.SUCCEEDED,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "pending": PaymentStatus.PENDING,
}

PAYMENT_OPTIONS = {
    PaymentMethod.CARD: "card",
    PaymentMethod.BANK_TRANSFER: "banktransfer",
    PaymentMethod.USSD: "ussd",
    PaymentMethod.MOBILE_MONEY: "mobilemoney",
}


def map_status(status: Optional[str]) -> PaymentStatus:
    return STATUS_MAP.get((status or "").lower(), PaymentStatus.PENDING)


class FlutterwaveProvider(HTTPPaymentProvider):
    """Flutterwave Standard: hosted payment link, verify by tx_ref, refund."""

    capabilities = FLUTTERWAVE_CAPABILITIES

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.flutterwave.com/v3",
        **kwargs: Any,
    ):
        super().__init__(base_url=base_url, secret_key=secret_key, **kwargs)

    async def create_payment_intent(
        self, request: PaymentIntentRequest
    ) -> ProviderPaymentIntent:
        currency = request.currency.upper()
        tx_ref = request.idempotency_key
        payload: Dict[str, Any] = {
            "tx_ref": tx_ref,
            "amount": str(from_minor(request.amount_minor, currency)),
            "currency": currency,
            "redirect_url": request.return_url,
            "customer": {"email": request.customer_email or ""},
            "meta": request.metadata,
            "customizations": {"description": request.description},
        }
        if request.payment_method in PAYMENT_OPTIONS:
            payload["payment_options"] = PAYMENT_OPTIONS[request.payment_method]

        logger.info(
            "flutterwave_creating_payment",
            tx_ref=tx_ref,
            amount_minor=request.amount_minor,
            currency=currency,
        )
        body = await self._request("POST", "/payments", "create_intent", json=payload)
        if body.get("status") != "success":
            raise ProviderError(
                body.get("message") or "Flutterwave payment creation failed",
                ProviderErrorType.PERMANENT,
                provider=self.name,
            )
        data = body.get("data") or {}

        return ProviderPaymentIntent(
            provider=self.name,
            reference=tx_ref,
            status=PaymentStatus.REQUIRES_ACTION,
            amount_minor=request.amount_minor,
            currency=currency,
            checkout_url=data.get("link"),
            raw=data,
        )

    async def _verify(self, tx_ref: str) -> Dict[str, Any]:
        body = await self._request(
            "GET",
            "/transactions/verify_by_reference",
            "retrieve",
            params={"tx_ref": tx_ref},
        )
        return body.get("data") or {}

    async def get_payment_status(self, reference: str) -> ProviderPaymentIntent:
        data = await self._verify(reference)
        currency = (data.get("currency") or "").upper()
        amount = data.get("amount")
        return ProviderPaymentIntent(
            provider=self.name,
            reference=data.get("tx_ref", reference),
            status=map_status(data.get("status")),
            amount_minor=to_minor(amount, currency) if amount is not None and currency else 0,
            currency=currency,
            raw=data,
        )

    async def refund_payment(
        self, reference: str, amount_minor: Optional[int] = None
    ) -> ProviderRefund:
        # Refunds are keyed by Flutterwave's numeric transaction id
        data = await self._verify(reference)
        transaction_id = data.get("id")
        if transaction_id is None:
            raise ProviderError(
                f"Flutterwave transaction {reference} not found",
                ProviderErrorType.PERMANENT,
                provider=self.name,
            )

        payload: Dict[str, Any] = {}
        if amount_minor:
            payload["amount"] = str(from_minor(amount_minor, (data.get("currency") or "").upper()))

        logger.info(
            "flutterwave_creating_refund",
            tx_ref=reference,
            transaction_id=transaction_id,
            amount_minor=amount_minor,
        )
        body = await self._request(
            "POST", f"/transactions/{transaction_id}/refund", "refund", json=payload
        )
        refund = body.get("data") or {}
        return ProviderRefund(
            provider=self.name,
            refund_reference=str(refund.get("id", "")),
            payment_reference=reference,
            status=refund.get("status", "pending"),
            amount_minor=amount_minor,
        )
