"""Ordered registry of configured payment providers."""
from typing import Dict, Iterator, List, Optional

import structlog

from payment_routing.config import Settings

from .base import PaymentProvider
from .flutterwave import FlutterwaveProvider
from .paystack import PaystackProvider
from .stripe import StripeProvider
from .stubs import FedNowProvider, SEPAProvider

logger = structlog.get_logger(__name__)


class ProviderNotFoundError(KeyError):
    """Raised when a provider name is not registered."""

    pass


class ProviderRegistry:
    """
    Providers in registration order.

    Order matters: it is the tie-breaker when two providers score the same,
    so the registry never re-sorts.
    """

    def __init__(self) -> None:
        self._providers: Dict[str, PaymentProvider] = {}

    def register(self, provider: PaymentProvider) -> None:
        if provider.name in self._providers:
            raise ValueError(f"Provider already registered: {provider.name}")
        self._providers[provider.name] = provider
        logger.info("provider_registered", provider=provider.name)

    def get(self, name: str) -> PaymentProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotFoundError(name) from None

    def names(self) -> List[str]:
        return list(self._providers)

    def eligible(
        self, currency: str, country: Optional[str], amount_minor: int
    ) -> List[PaymentProvider]:
        """Providers that can take the payment, in registration order."""
        return [p for p in self._providers.values() if p.supports(currency, country, amount_minor)]

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[PaymentProvider]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()


def build_default_registry(settings: Settings) -> ProviderRegistry:
    """
    Build the registry from settings.

    Card processors are registered only when their credentials are present;
    the bank rails follow when enabled.
    """
    registry = ProviderRegistry()
    http_options = {
        "timeout": settings.provider_timeout_seconds,
        "max_attempts": settings.provider_retry_max_attempts,
    }

    if settings.stripe_secret_key:
        registry.register(
            StripeProvider(settings.stripe_secret_key, api_version=settings.stripe_api_version)
        )
    if settings.paystack_secret_key:
        registry.register(
            PaystackProvider(
                settings.paystack_secret_key,
                base_url=settings.paystack_base_url,
                **http_options,
            )
        )
    if settings.flutterwave_secret_key:
        registry.register(
            FlutterwaveProvider(
                settings.flutterwave_secret_key,
                base_url=settings.flutterwave_base_url,
                **http_options,
            )
        )
    if settings.sepa_enabled:
        registry.register(SEPAProvider())
    if settings.fednow_enabled:
        registry.register(FedNowProvider())

    logger.info("provider_registry_built", providers=registry.names())
    return registry
