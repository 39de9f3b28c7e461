"""Payment provider adapters and registry."""
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
from .registry import ProviderNotFoundError, ProviderRegistry, build_default_registry

__all__ = [
    "PaymentIntentRequest",
    "PaymentMethod",
    "PaymentProvider",
    "PaymentStatus",
    "ProviderCapabilities",
    "ProviderError",
    "ProviderErrorType",
    "ProviderNotFoundError",
    "ProviderPaymentIntent",
    "ProviderRefund",
    "ProviderRegistry",
    "build_default_registry",
]
