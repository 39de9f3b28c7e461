"""Tests for per-provider routing analytics."""
import uuid

import pytest

from payment_routing.core.routing_analytics import ProviderStats, RoutingAnalytics
from payment_routing.database.models import PaymentIntent


async def _intents(db, provider: str, currency: str, amount_minor: int, **statuses: int) -> None:
    for status, count in statuses.items():
        for _ in range(count):
            db.add(
                PaymentIntent(
                    idempotency_key=f"analytics-{uuid.uuid4()}",
                    user_id="user_123",
                    provider=provider,
                    provider_reference=f"{provider}_{uuid.uuid4().hex}",
                    amount_minor=amount_minor,
                    currency=currency,
                    status=status,
                )
            )
    await db.commit()


class TestProviderStats:
    """Rates and status thresholds."""

    @pytest.mark.unit
    def test_no_settled_intents_is_unknown(self):
        stats = ProviderStats(provider="sepa", total=3, settled=0)

        assert stats.success_rate is None
        assert stats.error_rate is None
        assert stats.status == "unknown"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "succeeded,errors,settled,expected",
        [
            (95, 5, 100, "active"),
            (85, 15, 100, "degraded"),
            (90, 10, 100, "active"),
            (65, 35, 100, "down"),
            (75, 5, 100, "degraded"),
        ],
    )
    def test_status_thresholds(self, succeeded, errors, settled, expected):
        stats = ProviderStats(
            provider="stripe", total=settled, settled=settled, succeeded=succeeded, errors=errors
        )

        assert stats.status == expected


class TestRoutingAnalytics:
    """Aggregation over stored payment intents."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rates_use_settled_intents_only(self, test_db):
        await _intents(test_db, "stripe", "USD", 1_000, succeeded=3, failed=1, requires_action=4)

        [stats] = await RoutingAnalytics().provider_stats(test_db)

        assert stats.total == 8
        assert stats.settled == 4
        assert stats.success_rate == 75.0
        assert stats.error_rate == 25.0
        assert stats.volume_minor == {"USD": 3_000}
        assert stats.status == "degraded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refunded_counts_as_success_and_volume_per_currency(self, test_db):
        await _intents(test_db, "flutterwave", "NGN", 500_000, succeeded=1, refunded=1)
        await _intents(test_db, "flutterwave", "KES", 10_000, succeeded=2, cancelled=1)

        [stats] = await RoutingAnalytics().provider_stats(test_db)

        assert stats.succeeded == 4
        assert stats.settled == 5
        assert stats.errors == 0
        assert stats.volume_minor == {"NGN": 1_000_000, "KES": 20_000}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_registered_providers_without_intents_are_listed(self, test_db):
        await _intents(test_db, "paystack", "NGN", 10_000, succeeded=1)

        stats = await RoutingAnalytics().provider_stats(test_db, ["sepa", "paystack"])

        assert [s.provider for s in stats] == ["paystack", "sepa"]
        assert stats[1].status == "unknown"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_report_totals(self, test_db):
        await _intents(test_db, "stripe", "USD", 1_000, succeeded=9, failed=1)
        await _intents(test_db, "paystack", "NGN", 10_000, succeeded=10)

        report = await RoutingAnalytics().report(test_db, ["stripe", "paystack", "fednow"])

        assert report["totals"] == {
            "payment_intents": 20,
            "settled": 20,
            "success_rate": 95.0,
            "top_provider": "paystack",
        }
        assert {p["provider"]: p["status"] for p in report["providers"]} == {
            "fednow": "unknown",
            "paystack": "active",
            "stripe": "active",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_report(self, test_db):
        report = await RoutingAnalytics().report(test_db)

        assert report == {
            "providers": [],
            "totals": {
                "payment_intents": 0,
                "settled": 0,
                "success_rate": None,
                "top_provider": None,
            },
        }
