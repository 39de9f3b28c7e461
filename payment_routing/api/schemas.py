"""
Pydantic schemas for API request/response models.

All amounts are integers in the currency's minor unit.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from payment_routing.providers.base import PaymentMethod


def _upper(v: Optional[str]) -> Optional[str]:
    return v.upper() if v else v


class CreatePaymentIntentRequest(BaseModel):
    """Request schema for creating a payment intent."""

    user_id: str = Field(..., min_length=1, description="User identifier")
    amount_minor: int = Field(..., gt=0, description="Amount in minor units (cents, kobo, ...)")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO 4217 currency code")
    account_id: Optional[UUID] = Field(
        default=None, description="Wallet account credited when the payment succeeds"
    )
    country: Optional[str] = Field(
        default=None, min_length=2, max_length=2, description="Payer country (ISO 3166-1 alpha-2)"
    )
    payment_method: Optional[PaymentMethod] = Field(default=None, description="Requested method")
    preferred_provider: Optional[str] = Field(
        default=None, description="Provider override; ignored when it cannot take the payment"
    )
    customer_email: Optional[str] = Field(default=None, description="Payer email")
    description: str = Field(default="", max_length=500)
    return_url: Optional[str] = Field(default=None, description="Redirect after hosted checkout")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Optional metadata")

    @field_validator("currency", "country")
    @classmethod
    def validate_codes(cls, v: Optional[str]) -> Optional[str]:
        """Currency and country codes are stored upper-case."""
        return _upper(v)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "user_123",
                    "amount_minor": 500000,
                    "currency": "NGN",
                    "country": "NG",
                    "payment_method": "card",
                    "account_id": "123e4567-e89b-12d3-a456-426614174000",
                    "customer_email": "ada@example.com",
                }
            ]
        }
    }


class PaymentIntentResponse(BaseModel):
    """Response schema for payment intents."""

    id: str = Field(..., description="Payment intent ID")
    user_id: str
    account_id: Optional[str] = None
    provider: str = Field(..., description="Provider chosen by routing")
    provider_reference: Optional[str] = Field(default=None, description="Provider's own reference")
    amount_minor: int
    currency: str
    country: Optional[str] = None
    payment_method: Optional[str] = None
    status: str
    routing_score: Optional[int] = None
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None
    error_message: Optional[str] = None
    idempotency_key: str
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")


class RefundRequest(BaseModel):
    """Request schema for refunding a payment intent."""

    amount_minor: Optional[int] = Field(
        default=None, gt=0, description="Partial refund amount (full refund if not specified)"
    )


class RefundResponse(BaseModel):
    """Response schema for refund."""

    payment_intent_id: str
    refund_reference: str = Field(..., description="Provider refund reference")
    status: str = Field(..., description="Refund status reported by the provider")
    amount_minor: int


class RoutingQuoteRequest(BaseModel):
    """Request schema for a routing quote."""

    amount_minor: int = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    payment_method: Optional[PaymentMethod] = None
    preferred_provider: Optional[str] = None

    @field_validator("currency", "country")
    @classmethod
    def validate_codes(cls, v: Optional[str]) -> Optional[str]:
        """Currency and country codes are stored upper-case."""
        return _upper(v)


class CandidateScore(BaseModel):
    provider: str
    score: int
    reasons: List[str]


class RoutingDecisionResponse(BaseModel):
    """Routing decision with every candidate's score."""

    provider: str
    score: int
    reasons: List[str]
    overridden: bool
    candidates: List[CandidateScore]


class CreateAccountRequest(BaseModel):
    """Request schema for opening a wallet account."""

    user_id: str = Field(..., min_length=1)
    currency: str = Field(..., min_length=3, max_length=3)
    account_type: str = Field(default="PERSONAL", max_length=20)

    @field_validator("currency", "account_type")
    @classmethod
    def validate_upper(cls, v: str) -> str:
        return v.upper()


class AccountResponse(BaseModel):
    id: str
    user_id: str
    currency: str
    account_type: str
    balance_minor: int
    created_at: str
    updated_at: str


class LedgerEntryResponse(BaseModel):
    id: int
    account_id: str
    entry_type: str = Field(..., description="CREDIT or DEBIT")
    amount_minor: int = Field(..., description="Signed amount; debits are negative")
    balance_after_minor: int
    description: Optional[str] = None
    reference_id: Optional[str] = None
    created_at: str


class LedgerResponse(BaseModel):
    account_id: str
    entries: List[LedgerEntryResponse]
    limit: int
    offset: int


class WalletMovementRequest(BaseModel):
    """Debit from, or credit back to, a wallet under a caller-chosen reference."""

    amount_minor: int = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    reference_id: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    user_id: Optional[str] = Field(
        default=None, description="When given, must own the account"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()


class LedgerMovementResponse(BaseModel):
    account_id: str
    entry_type: str
    amount_minor: int
    balance_after_minor: int
    reference_id: Optional[str] = None
    entry_id: Optional[int] = None
    duplicate: bool = Field(..., description="True when the reference was already applied")


class TransferRequest(BaseModel):
    """Request schema for moving money between two wallets."""

    from_account_id: UUID
    to_account_id: UUID
    amount_minor: int = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    reference_id: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()


class TransferResponse(BaseModel):
    reference_id: str
    debit: LedgerMovementResponse
    credit: LedgerMovementResponse
    duplicate: bool


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="success, duplicate, no_handler or ignored")
    event_id: str = Field(..., description="Provider event ID")
    event_type: Optional[str] = None
    message: Optional[str] = Field(default=None, description="Status message")
    result: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
