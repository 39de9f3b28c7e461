"""Per-provider routing performance computed from stored payment intents."""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_routing.database.models import PaymentIntent
from payment_routing.providers.base import PaymentStatus

logger = structlog.get_logger(__name__)

SUCCESS_STATUSES = {PaymentStatus.SUCCEEDED.value, PaymentStatus.REFUNDED.value}
ERROR_STATUSES = {PaymentStatus.FAILED.value}
# Outcomes counted in rates; in-flight intents are not
SETTLED_STATUSES = SUCCESS_STATUSES | ERROR_STATUSES | {PaymentStatus.CANCELLED.value}

DEGRADED_ERROR_RATE = 10.0
DEGRADED_SUCCESS_RATE = 90.0
DOWN_ERROR_RATE = 30.0
DOWN_SUCCESS_RATE = 70.0


@dataclass
class ProviderStats:
    provider: str
    total: int = 0
    settled: int = 0
    succeeded: int = 0
    errors: int = 0
    volume_minor: Dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> Optional[float]:
        if not self.settled:
            return None
        return round(self.succeeded / self.settled * 100, 2)

    @property
    def error_rate(self) -> Optional[float]:
        if not self.settled:
            return None
        return round(self.errors / self.settled * 100, 2)

    @property
    def status(self) -> str:
        success_rate, error_rate = self.success_rate, self.error_rate
        if success_rate is None or error_rate is None:
            return "unknown"
        if error_rate > DOWN_ERROR_RATE or success_rate < DOWN_SUCCESS_RATE:
            return "down"
        if error_rate > DEGRADED_ERROR_RATE or success_rate < DEGRADED_SUCCESS_RATE:
            return "degraded"
        return "active"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "total": self.total,
            "settled": self.settled,
            "succeeded": self.succeeded,
            "errors": self.errors,
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "volume_minor": dict(self.volume_minor),
            "status": self.status,
        }


class RoutingAnalytics:
    """Aggregates payment intent outcomes per provider."""

    async def provider_stats(
        self, db: AsyncSession, providers: Optional[Iterable[str]] = None
    ) -> List[ProviderStats]:
        """
        Compute stats for every provider seen in payment intents.

        Args:
            db: Database session
            providers: Registered provider names to include even without intents

        Returns:
            List[ProviderStats]: One entry per provider, in name order
        """
        stmt = select(
            PaymentIntent.provider,
            PaymentIntent.status,
            PaymentIntent.currency,
            func.count(PaymentIntent.id),
            func.coalesce(func.sum(PaymentIntent.amount_minor), 0),
        ).group_by(PaymentIntent.provider, PaymentIntent.status, PaymentIntent.currency)
        rows = (await db.execute(stmt)).all()

        stats: Dict[str, ProviderStats] = {
            name: ProviderStats(provider=name) for name in (providers or ())
        }
        for provider, status, currency, count, amount in rows:
            entry = stats.setdefault(provider, ProviderStats(provider=provider))
            entry.total += count
            if status in SETTLED_STATUSES:
                entry.settled += count
            if status in SUCCESS_STATUSES:
                entry.succeeded += count
                # Volume counts money that actually moved
                entry.volume_minor[currency] = entry.volume_minor.get(currency, 0) + int(amount)
            if status in ERROR_STATUSES:
                entry.errors += count

        return [stats[name] for name in sorted(stats)]

    async def report(
        self, db: AsyncSession, providers: Optional[Iterable[str]] = None
    ) -> Dict[str, Any]:
        """Provider stats plus overall totals, as served on the admin API."""
        provider_stats = await self.provider_stats(db, providers)
        total = sum(s.total for s in provider_stats)
        settled = sum(s.settled for s in provider_stats)
        succeeded = sum(s.succeeded for s in provider_stats)

        ranked = [s for s in provider_stats if s.success_rate is not None]
        top_provider = (
            max(ranked, key=lambda s: (s.success_rate, s.settled)).provider if ranked else None
        )

        logger.info("routing_analytics_computed", providers=len(provider_stats), total=total)
        return {
            "providers": [s.to_dict() for s in provider_stats],
            "totals": {
                "payment_intents": total,
                "settled": settled,
                "success_rate": round(succeeded / settled * 100, 2) if settled else None,
                "top_provider": top_provider,
            },
        }
