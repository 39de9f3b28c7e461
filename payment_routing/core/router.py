"""
Provider selection for incoming payments.

Scoring is additive over the eligible providers:

- domestic provider for the payer's country: +30
- supports the requested payment method: +20
- provider-specific bonus for the currency
- provider-specific bonus for the country

The highest score wins; on a tie the provider registered first keeps the lead.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from payment_routing.monitoring.metrics import metrics
from payment_routing.providers.base import PaymentMethod, PaymentProvider
from payment_routing.providers.registry import ProviderRegistry

logger = structlog.get_logger(__name__)

DOMESTIC_BONUS = 30
PAYMENT_METHOD_BONUS = 20


class RoutingError(Exception):
    """Raised when a payment cannot be routed."""

    pass


class NoEligibleProviderError(RoutingError):
    """No registered provider accepts the currency, country and amount."""

    def __init__(self, currency: str, country: Optional[str], amount_minor: int):
        super().__init__(
            f"No provider supports {amount_minor} {currency}"
            + (f" in {country}" if country else "")
        )
        self.currency = currency
        self.country = country
        self.amount_minor = amount_minor


@dataclass
class ProviderScore:
    """Score of one eligible provider and where the points came from."""

    provider: str
    score: int
    reasons: List[str] = field(default_factory=list)


@dataclass
class RoutingDecision:
    """Outcome of routing one payment."""

    provider: str
    score: int
    reasons: List[str]
    candidates: List[ProviderScore]
    overridden: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "score": self.score,
            "reasons": list(self.reasons),
            "overridden": self.overridden,
            "candidates": [
                {"provider": c.provider, "score": c.score, "reasons": list(c.reasons)}
                for c in self.candidates
            ],
        }


def score_provider(
    provider: PaymentProvider,
    currency: str,
    country: Optional[str] = None,
    payment_method: Optional[PaymentMethod] = None,
) -> ProviderScore:
    """
    Score a single provider for a request.

    Eligibility is not checked here; callers score only eligible providers.
    """
    caps = provider.capabilities
    score = 0
    reasons: List[str] = []

    if country and country in caps.domestic_countries:
        score += DOMESTIC_BONUS
        reasons.append(f"domestic:{country}:+{DOMESTIC_BONUS}")

    if payment_method and payment_method in caps.payment_methods:
        score += PAYMENT_METHOD_BONUS
        reasons.append(f"payment_method:{payment_method.value}:+{PAYMENT_METHOD_BONUS}")

    currency_bonus = caps.currency_bonus.get(currency, 0)
    if currency_bonus:
        score += currency_bonus
        reasons.append(f"currency:{currency}:+{currency_bonus}")

    if country:
        country_bonus = caps.country_bonus.get(country, 0)
        if country_bonus:
            score += country_bonus
            reasons.append(f"country:{country}:+{country_bonus}")

    return ProviderScore(provider=provider.name, score=score, reasons=reasons)


def determine_optimal_provider(
    registry: ProviderRegistry,
    currency: str,
    amount_minor: int,
    country: Optional[str] = None,
    payment_method: Optional[PaymentMethod] = None,
    preferred_provider: Optional[str] = None,
) -> RoutingDecision:
    """
    Pick the provider for a payment.

    Args:
        registry: Registered providers, in tie-break order
        currency: ISO 4217 currency code
        amount_minor: Amount in minor units
        country: Payer country (ISO 3166-1 alpha-2), if known
        payment_method: Requested payment method, if any
        preferred_provider: Explicit override, honoured only when eligible

    Returns:
        RoutingDecision: Winner plus every candidate's score

    Raises:
        NoEligibleProviderError: If no provider accepts the payment
    """
    currency = currency.upper()
    country = country.upper() if country else None

    eligible = registry.eligible(currency, country, amount_minor)
    if not eligible:
        metrics.record_no_eligible_provider(currency)
        logger.warning(
            "routing_no_eligible_provider",
            currency=currency,
            country=country,
            amount_minor=amount_minor,
        )
        raise NoEligibleProviderError(currency, country, amount_minor)

    candidates = [score_provider(p, currency, country, payment_method) for p in eligible]

    best = candidates[0]
    for candidate in candidates[1:]:
        # strictly greater: earlier registration wins ties
        if candidate.score > best.score:
            best = candidate

    overridden = False
    if preferred_provider:
        preferred = next((c for c in candidates if c.provider == preferred_provider), None)
        if preferred is not None:
            best = preferred
            overridden = True
        else:
            logger.warning(
                "routing_preferred_provider_ineligible",
                preferred_provider=preferred_provider,
                currency=currency,
                country=country,
                amount_minor=amount_minor,
            )

    decision = RoutingDecision(
        provider=best.provider,
        score=best.score,
        reasons=list(best.reasons) + (["override:preferred_provider"] if overridden else []),
        candidates=candidates,
        overridden=overridden,
    )

    metrics.record_routing_decision(decision.provider, currency)
    logger.info(
        "routing_decision_made",
        provider=decision.provider,
        score=decision.score,
        currency=currency,
        country=country,
        payment_method=payment_method.value if payment_method else None,
        candidates={c.provider: c.score for c in candidates},
        overridden=overridden,
    )
    return decision
