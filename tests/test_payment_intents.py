"""Tests for the payment intent lifecycle."""
import json
import uuid
from typing import Any

import pytest
from sqlalchemy import func, select

from payment_routing.core.idempotency import IdempotencyConflictError, IdempotencyManager
from payment_routing.core.ledger import InsufficientFundsError
from payment_routing.core.payment_intents import (
    PaymentIntentNotFoundError,
    PaymentIntentStateError,
    PaymentIntentValidationError,
    ProviderUnavailableError,
    settlement_reference,
)
from payment_routing.core.router import NoEligibleProviderError
from payment_routing.database.models import Account, LedgerEntry, OutboxEvent, PaymentIntent
from payment_routing.providers.base import (
    PaymentMethod,
    PaymentStatus,
    ProviderError,
    ProviderErrorType,
)


async def _balance(db, account_id) -> int:
    result = await db.execute(select(Account.balance_minor).where(Account.id == account_id))
    return result.scalar_one()


async def _outbox_types(db) -> list:
    result = await db.execute(select(OutboxEvent.event_type).order_by(OutboxEvent.id))
    return list(result.scalars().all())


async def _count(db, model) -> int:
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar_one()


class TestCreatePaymentIntent:
    """Routing, idempotency and persistence on creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_routes_and_persists(self, test_db, payment_intent_service, fake_providers):
        response = await payment_intent_service.create_payment_intent(
            test_db,
            user_id="user_123",
            amount_minor=10_000,
            currency="usd",
            country="us",
            payment_method=PaymentMethod.CARD,
            idempotency_key="order-1",
        )

        assert response["provider"] == "stripe"
        assert response["routing_score"] == 70
        assert response["status"] == "requires_action"
        assert response["provider_reference"] == "stripe_ref_1"
        assert response["currency"] == "USD"
        assert response["country"] == "US"

        request = fake_providers["stripe"].requests[0]
        assert request.idempotency_key == "user_123:order-1"
        assert request.metadata["payment_intent_id"] == response["id"]

        intent = await test_db.get(PaymentIntent, uuid.UUID(response["id"]))
        assert intent.details["routing"]["provider"] == "stripe"
        assert await _outbox_types(test_db) == ["payment_intent.created"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_key_returns_same_intent(self, test_db, payment_intent_service, fake_providers):
        kwargs = dict(user_id="user_123", amount_minor=500_000, currency="NGN", country="NG")

        first = await payment_intent_service.create_payment_intent(
            test_db, idempotency_key="order-2", **kwargs
        )
        second = await payment_intent_service.create_payment_intent(
            test_db, idempotency_key="order-2", **kwargs
        )

        assert first["id"] == second["id"]
        assert len(fake_providers["paystack"].requests) == 1
        assert await _count(test_db, PaymentIntent) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_key_from_another_user_opens_own_intent(
        self, test_db, payment_intent_service, fake_providers
    ):
        alice = await payment_intent_service.create_payment_intent(
            test_db, user_id="alice", amount_minor=5_000, currency="USD", country="US",
            idempotency_key="order-1",
        )
        mallory = await payment_intent_service.create_payment_intent(
            test_db, user_id="mallory", amount_minor=100, currency="USD", country="US",
            idempotency_key="order-1",
        )

        assert mallory["id"] != alice["id"]
        assert mallory["user_id"] == "mallory"
        assert mallory["amount_minor"] == 100
        assert mallory["client_secret"] != alice["client_secret"]
        assert alice["idempotency_key"] == "alice:order-1"
        assert mallory["idempotency_key"] == "mallory:order-1"
        assert len(fake_providers["stripe"].requests) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reused_key_with_different_request_conflicts(
        self, test_db, payment_intent_service, fake_providers
    ):
        await payment_intent_service.create_payment_intent(
            test_db, user_id="user_123", amount_minor=5_000, currency="USD", country="US",
            idempotency_key="order-3",
        )

        with pytest.raises(IdempotencyConflictError):
            await payment_intent_service.create_payment_intent(
                test_db,
                user_id="user_123",
                amount_minor=6_000,
                currency="USD",
                country="US",
                idempotency_key="order-3",
            )

        assert len(fake_providers["stripe"].requests) == 1
        assert await _count(test_db, PaymentIntent) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_overlong_key_rejected(self, test_db, payment_intent_service):
        with pytest.raises(PaymentIntentValidationError):
            await payment_intent_service.create_payment_intent(
                test_db,
                user_id="user_123",
                amount_minor=5_000,
                currency="USD",
                idempotency_key="k" * 121,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_key_derived_from_request_when_missing(self, test_db, payment_intent_service):
        kwargs = dict(user_id="user_123", amount_minor=500_000, currency="NGN", country="NG")

        first = await payment_intent_service.create_payment_intent(test_db, **kwargs)
        second = await payment_intent_service.create_payment_intent(test_db, **kwargs)

        assert first["id"] == second["id"]
        assert first["idempotency_key"].startswith("user_123:")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cached_response_served_from_redis(
        self, test_db, provider_registry, mock_redis, fake_providers
    ):
        from payment_routing.core.payment_intents import PaymentIntentService

        service = PaymentIntentService(
            provider_registry, idempotency_manager=IdempotencyManager(redis_client=mock_redis)
        )
        cached = {
            "id": "cached-id",
            "status": "pending",
            "amount_minor": 500_000,
            "currency": "NGN",
            "account_id": None,
        }
        mock_redis.get.return_value = json.dumps(cached)

        response = await service.create_payment_intent(
            test_db, user_id="user_123", amount_minor=500_000, currency="NGN", idempotency_key="k"
        )

        assert response == cached
        assert fake_providers["paystack"].requests == []
        mock_redis.get.assert_awaited_once_with("idempotency:user_123:k")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_errors_fall_back_to_database(
        self, test_db, provider_registry, mock_redis
    ):
        from payment_routing.core.payment_intents import PaymentIntentService

        mock_redis.get.side_effect = ConnectionError("redis down")
        mock_redis.setex.side_effect = ConnectionError("redis down")
        service = PaymentIntentService(
            provider_registry, idempotency_manager=IdempotencyManager(redis_client=mock_redis)
        )

        response = await service.create_payment_intent(
            test_db, user_id="user_123", amount_minor=500_000, currency="NGN", idempotency_key="k"
        )

        assert response["provider"] == "paystack"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_decline_returns_failed_intent(
        self, test_db, payment_intent_service, fake_providers
    ):
        fake_providers["paystack"].error = ProviderError(
            "Paystack requires a customer email", ProviderErrorType.PERMANENT, provider="paystack"
        )

        response = await payment_intent_service.create_payment_intent(
            test_db, user_id="user_123", amount_minor=500_000, currency="NGN", idempotency_key="k"
        )

        assert response["status"] == "failed"
        assert response["provider_reference"] is None
        assert "customer email" in response["error_message"]
        assert await _outbox_types(test_db) == ["payment_intent.failed"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_failure_stores_nothing(
        self, test_db, payment_intent_service, fake_providers
    ):
        fake_providers["paystack"].error = ProviderError(
            "timeout", ProviderErrorType.TRANSIENT, provider="paystack"
        )

        with pytest.raises(ProviderUnavailableError):
            await payment_intent_service.create_payment_intent(
                test_db, user_id="user_123", amount_minor=500_000, currency="NGN"
            )
        await test_db.rollback()

        assert await _count(test_db, PaymentIntent) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_eligible_provider(self, test_db, payment_intent_service):
        with pytest.raises(NoEligibleProviderError):
            await payment_intent_service.create_payment_intent(
                test_db, user_id="user_123", amount_minor=1_000, currency="JPY"
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [{"amount_minor": 0}, {"currency": "US"}, {"currency": "U5D"}, {"country": "USA"}],
    )
    async def test_validation(self, test_db, payment_intent_service, overrides):
        kwargs = dict(user_id="user_123", amount_minor=1_000, currency="USD", country="US")
        kwargs.update(overrides)

        with pytest.raises(PaymentIntentValidationError):
            await payment_intent_service.create_payment_intent(test_db, **kwargs)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_account_must_belong_to_user(self, test_db, payment_intent_service, sample_account):
        with pytest.raises(PaymentIntentValidationError):
            await payment_intent_service.create_payment_intent(
                test_db,
                user_id="someone_else",
                amount_minor=1_000,
                currency="USD",
                account_id=sample_account.id,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_account_currency_must_match(self, test_db, payment_intent_service, sample_account):
        with pytest.raises(PaymentIntentValidationError):
            await payment_intent_service.create_payment_intent(
                test_db,
                user_id="user_123",
                amount_minor=500_000,
                currency="NGN",
                account_id=sample_account.id,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_immediate_success_credits_account(
        self, test_db, payment_intent_service, fake_providers, sample_account
    ):
        fake_providers["stripe"].status = PaymentStatus.SUCCEEDED

        response = await payment_intent_service.create_payment_intent(
            test_db,
            user_id="user_123",
            amount_minor=10_000,
            currency="USD",
            country="US",
            account_id=sample_account.id,
        )

        assert response["status"] == "succeeded"
        assert await _balance(test_db, sample_account.id) == 10_000


class TestSettle:
    """Provider-reported statuses applied to intents."""

    async def _intent(self, db, service, account):
        response = await service.create_payment_intent(
            db,
            user_id="user_123",
            amount_minor=10_000,
            currency="USD",
            country="US",
            account_id=account.id,
            idempotency_key=f"settle-{uuid.uuid4()}",
        )
        return await service.get_payment_intent(db, uuid.UUID(response["id"]))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_credits_once(self, test_db, payment_intent_service, sample_account):
        intent = await self._intent(test_db, payment_intent_service, sample_account)

        first = await payment_intent_service.settle(test_db, intent, PaymentStatus.SUCCEEDED)
        await test_db.commit()
        second = await payment_intent_service.settle(test_db, intent, PaymentStatus.SUCCEEDED)
        await test_db.commit()

        assert first.applied
        assert second.duplicate
        assert intent.status == "succeeded"
        assert await _balance(test_db, sample_account.id) == 10_000

        result = await test_db.execute(select(LedgerEntry.reference_id))
        assert result.scalars().all() == [settlement_reference(intent)]
        assert (await _outbox_types(test_db)).count("payment_intent.succeeded") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_succeeded_is_not_downgraded(self, test_db, payment_intent_service, sample_account):
        intent = await self._intent(test_db, payment_intent_service, sample_account)
        await payment_intent_service.settle(test_db, intent, PaymentStatus.SUCCEEDED)
        await test_db.commit()

        result = await payment_intent_service.settle(
            test_db, intent, PaymentStatus.FAILED, error_message="late failure"
        )

        assert result is None
        assert intent.status == "succeeded"
        assert intent.error_message is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_records_message_without_credit(
        self, test_db, payment_intent_service, sample_account
    ):
        intent = await self._intent(test_db, payment_intent_service, sample_account)

        result = await payment_intent_service.settle(
            test_db, intent, PaymentStatus.FAILED, error_message="card declined"
        )
        await test_db.commit()

        assert result is None
        assert intent.status == "failed"
        assert intent.error_message == "card declined"
        assert await _balance(test_db, sample_account.id) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_change_invalidates_cache(
        self, test_db, provider_registry, mock_redis, sample_account
    ):
        from payment_routing.core.payment_intents import PaymentIntentService

        service = PaymentIntentService(
            provider_registry, idempotency_manager=IdempotencyManager(redis_client=mock_redis)
        )
        intent = await self._intent(test_db, service, sample_account)

        await service.settle(test_db, intent, PaymentStatus.PROCESSING)

        mock_redis.delete.assert_awaited_with(f"idempotency:{intent.idempotency_key}")


class TestRefreshAndRefund:
    """Polling and refunds."""

    async def _succeeded_intent(self, db, service, providers, account):
        providers["stripe"].status = PaymentStatus.SUCCEEDED
        response = await service.create_payment_intent(
            db,
            user_id="user_123",
            amount_minor=10_000,
            currency="USD",
            country="US",
            account_id=account.id,
        )
        return uuid.UUID(response["id"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refresh_applies_polled_status(
        self, test_db, payment_intent_service, fake_providers, sample_account
    ):
        response = await payment_intent_service.create_payment_intent(
            test_db,
            user_id="user_123",
            amount_minor=10_000,
            currency="USD",
            country="US",
            account_id=sample_account.id,
        )
        fake_providers["stripe"].status = PaymentStatus.SUCCEEDED

        intent = await payment_intent_service.refresh_payment_intent(
            test_db, uuid.UUID(response["id"])
        )

        assert intent.status == "succeeded"
        assert await _balance(test_db, sample_account.id) == 10_000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refresh_terminal_intent_skips_provider(
        self, test_db, payment_intent_service, fake_providers, sample_account
    ):
        intent_id = await self._succeeded_intent(
            test_db, payment_intent_service, fake_providers, sample_account
        )
        fake_providers["stripe"].error = ProviderError("down", ProviderErrorType.TRANSIENT)

        intent = await payment_intent_service.refresh_payment_intent(test_db, intent_id)

        assert intent.status == "succeeded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refresh_provider_down(
        self, test_db, payment_intent_service, fake_providers
    ):
        response = await payment_intent_service.create_payment_intent(
            test_db, user_id="user_123", amount_minor=10_000, currency="USD", country="US"
        )
        fake_providers["stripe"].error = ProviderError("down", ProviderErrorType.TRANSIENT)

        with pytest.raises(ProviderUnavailableError):
            await payment_intent_service.refresh_payment_intent(test_db, uuid.UUID(response["id"]))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_unknown_intent(self, test_db, payment_intent_service):
        with pytest.raises(PaymentIntentNotFoundError):
            await payment_intent_service.get_payment_intent(test_db, uuid.uuid4())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_refund_debits_wallet(
        self, test_db, payment_intent_service, fake_providers, sample_account
    ):
        intent_id = await self._succeeded_intent(
            test_db, payment_intent_service, fake_providers, sample_account
        )

        refund = await payment_intent_service.refund_payment_intent(test_db, intent_id)

        assert refund["amount_minor"] == 10_000
        assert refund["refund_reference"] == "re_1"
        assert fake_providers["stripe"].refunds == [("stripe_ref_1", 10_000)]
        assert await _balance(test_db, sample_account.id) == 0
        intent = await payment_intent_service.get_payment_intent(test_db, intent_id)
        assert intent.status == "refunded"
        assert "payment_intent.refunded" in await _outbox_types(test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_requires_succeeded_intent(self, test_db, payment_intent_service):
        response = await payment_intent_service.create_payment_intent(
            test_db, user_id="user_123", amount_minor=10_000, currency="USD", country="US"
        )

        with pytest.raises(PaymentIntentStateError):
            await payment_intent_service.refund_payment_intent(test_db, uuid.UUID(response["id"]))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_above_payment_rejected(
        self, test_db, payment_intent_service, fake_providers, sample_account
    ):
        intent_id = await self._succeeded_intent(
            test_db, payment_intent_service, fake_providers, sample_account
        )

        with pytest.raises(PaymentIntentValidationError):
            await payment_intent_service.refund_payment_intent(test_db, intent_id, 10_001)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_of_spent_balance_blocked(
        self, test_db, payment_intent_service, fake_providers, sample_account, ledger_service
    ):
        intent_id = await self._succeeded_intent(
            test_db, payment_intent_service, fake_providers, sample_account
        )
        await ledger_service.debit_account(test_db, sample_account.id, 9_000, "USD")
        await test_db.commit()

        with pytest.raises(InsufficientFundsError):
            await payment_intent_service.refund_payment_intent(test_db, intent_id)

        assert fake_providers["stripe"].refunds == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_refund_restores_balance(
        self, test_db, payment_intent_service, fake_providers, sample_account
    ):
        intent_id = await self._succeeded_intent(
            test_db, payment_intent_service, fake_providers, sample_account
        )
        account_id = sample_account.id
        fake_providers["stripe"].refund_error = ProviderError(
            "charge already refunded", ProviderErrorType.PERMANENT, provider="stripe"
        )

        with pytest.raises(PaymentIntentStateError):
            await payment_intent_service.refund_payment_intent(test_db, intent_id)

        assert await _balance(test_db, account_id) == 10_000
        intent = await payment_intent_service.get_payment_intent(test_db, intent_id)
        assert intent.status == "succeeded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_refund_failure(
        self, test_db, payment_intent_service, fake_providers, sample_account
    ):
        intent_id = await self._succeeded_intent(
            test_db, payment_intent_service, fake_providers, sample_account
        )
        account_id = sample_account.id
        fake_providers["stripe"].refund_error = ProviderError(
            "timeout", ProviderErrorType.TRANSIENT, provider="stripe"
        )

        with pytest.raises(ProviderUnavailableError):
            await payment_intent_service.refund_payment_intent(test_db, intent_id, 5_000)

        assert await _balance(test_db, account_id) == 10_000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund_sends_amount_to_provider(
        self, test_db, payment_intent_service, fake_providers, sample_account
    ):
        intent_id = await self._succeeded_intent(
            test_db, payment_intent_service, fake_providers, sample_account
        )

        refund = await payment_intent_service.refund_payment_intent(test_db, intent_id, 4_000)

        assert refund["amount_minor"] == 4_000
        assert fake_providers["stripe"].refunds == [("stripe_ref_1", 4_000)]
        assert await _balance(test_db, sample_account.id) == 6_000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_slow_refund_releases_wallet(
        self,
        test_db,
        payment_intent_service,
        fake_providers,
        sample_account,
        test_settings,
        mocker: Any,
    ):
        intent_id = await self._succeeded_intent(
            test_db, payment_intent_service, fake_providers, sample_account
        )
        account_id = sample_account.id
        mocker.patch.object(test_settings, "provider_refund_timeout_seconds", 0.05)
        fake_providers["stripe"].refund_delay = 5.0

        with pytest.raises(ProviderUnavailableError, match="timed out"):
            await payment_intent_service.refund_payment_intent(test_db, intent_id)

        assert fake_providers["stripe"].refunds == []
        assert await _balance(test_db, account_id) == 10_000
        intent = await payment_intent_service.get_payment_intent(test_db, intent_id)
        assert intent.status == "succeeded"
