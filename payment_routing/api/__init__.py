"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CreateAccountRequest,
    CreatePaymentIntentRequest,
    PaymentIntentResponse,
    RefundRequest,
    RefundResponse,
    RoutingQuoteRequest,
)

__all__ = [
    "app",
    "CreateAccountRequest",
    "CreatePaymentIntentRequest",
    "PaymentIntentResponse",
    "RefundRequest",
    "RefundResponse",
    "RoutingQuoteRequest",
]
