"""Tests for airtime, gift card and bill payment outcomes reported by Reloadly."""
import json
import uuid

import pytest
from sqlalchemy import func, select

from payment_routing.core.external_transactions import (
    COMPLETED,
    FAILED,
    ExternalTransactionService,
    UnknownExternalEventError,
    parse_custom_identifier,
    split_event_type,
)
from payment_routing.database.models import Account, ExternalTransaction, LedgerEntry, OutboxEvent
from payment_routing.integrations.webhook_handler import parse_reloadly_event


async def _balance(db, account_id) -> int:
    result = await db.execute(select(Account.balance_minor).where(Account.id == account_id))
    return result.scalar_one()


def _topup(account_id, transaction_id=1001, **overrides) -> dict:
    data = {
        "transactionId": transaction_id,
        "customIdentifier": f"topup-user_123-{account_id}",
        "amount": "5.00",
        "currency": "USD",
        "recipientPhone": "+2348012345678",
        "operatorName": "MTN Nigeria",
    }
    data.update(overrides)
    return data


class TestIdentifiers:
    """customIdentifier and event type parsing."""

    @pytest.mark.unit
    def test_account_uuid_keeps_hyphens(self):
        account_id = uuid.uuid4()

        assert parse_custom_identifier(f"topup-user42-{account_id}") == ("user42", account_id)

    @pytest.mark.unit
    def test_bad_account_id_is_dropped(self):
        assert parse_custom_identifier("topup-user42-not-a-uuid") == ("user42", None)

    @pytest.mark.unit
    def test_missing_identifier(self):
        assert parse_custom_identifier(None) == (None, None)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "event_type,expected",
        [
            ("topup.success", ("topup", True)),
            ("giftcard.order.failed", ("giftcard.order", False)),
            ("bill.payment.success", ("bill.payment", True)),
        ],
    )
    def test_split_event_type(self, event_type, expected):
        assert split_event_type(event_type) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("event_type", ["topup.pending", "wallet.success", ""])
    def test_unknown_event_type(self, event_type):
        with pytest.raises(UnknownExternalEventError):
            split_event_type(event_type)


class TestHandleEvent:
    """Upsert and refund behaviour."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_creates_completed_record(self, test_db, sample_account):
        service = ExternalTransactionService()

        result = await service.handle_event(test_db, "topup.success", _topup(sample_account.id))
        await test_db.commit()

        assert result.status == COMPLETED
        assert result.refund is None
        record = await test_db.get(ExternalTransaction, result.transaction_id)
        assert record.transaction_type == "AIRTIME_TOPUP"
        assert record.user_id == "user_123"
        assert record.amount_minor == 500
        assert record.completed_at is not None
        assert record.recipient_details == {"phone": "+2348012345678", "operator": "MTN Nigeria"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_refunds_wallet(self, test_db, account_factory):
        account = await account_factory(balance_minor=1_000)
        service = ExternalTransactionService()

        result = await service.handle_event(
            test_db, "topup.failed", _topup(account.id, errorMessage="Operator unavailable")
        )
        await test_db.commit()

        assert result.status == FAILED
        assert result.refund.applied
        assert result.to_dict()["refund"]["amount_minor"] == 500
        assert await _balance(test_db, account.id) == 1_500
        record = await test_db.get(ExternalTransaction, result.transaction_id)
        assert record.error_message == "Operator unavailable"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_repeated_failure_refunds_once(self, test_db, session_factory, account_factory):
        account = await account_factory()
        service = ExternalTransactionService()

        first = await service.handle_event(test_db, "topup.failed", _topup(account.id))
        await test_db.commit()
        async with session_factory() as other:
            second = await service.handle_event(other, "topup.failed", _topup(account.id))
            await other.commit()

        assert first.refund.applied
        assert second.refund.duplicate
        assert first.transaction_id == second.transaction_id
        assert await _balance(test_db, account.id) == 500
        count = await test_db.execute(select(func.count()).select_from(LedgerEntry))
        assert count.scalar_one() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_then_failure_updates_record(self, test_db, sample_account):
        service = ExternalTransactionService()
        data = _topup(sample_account.id)

        await service.handle_event(test_db, "topup.success", data)
        result = await service.handle_event(test_db, "topup.failed", data)
        await test_db.commit()

        record = await test_db.get(ExternalTransaction, result.transaction_id)
        assert record.status == FAILED
        assert record.completed_at is None
        count = await test_db.execute(select(func.count()).select_from(ExternalTransaction))
        assert count.scalar_one() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_without_account_records_only(self, test_db):
        service = ExternalTransactionService()

        result = await service.handle_event(
            test_db,
            "giftcard.order.failed",
            {"transactionId": 7, "customIdentifier": "gift-user_9", "amount": 25, "currency": "USD"},
        )

        assert result.status == FAILED
        assert result.refund is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_currency_mismatch_is_recorded(self, test_db, account_factory):
        account = await account_factory(currency="NGN")
        service = ExternalTransactionService()

        result = await service.handle_event(test_db, "topup.failed", _topup(account.id))

        record = await test_db.get(ExternalTransaction, result.transaction_id)
        assert result.refund is None
        assert "refund failed" in record.error_message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bill_payment_receipt(self, test_db):
        service = ExternalTransactionService()

        result = await service.handle_event(
            test_db,
            "bill.payment.success",
            {
                "transactionId": 55,
                "amount": 20,
                "currency": "USD",
                "billerName": "Ikeja Electric",
                "subscriberAccountNumber": "0101",
            },
        )

        record = await test_db.get(ExternalTransaction, result.transaction_id)
        assert record.transaction_type == "BILL_PAYMENT"
        assert record.user_id == "unknown"
        assert record.recipient_details["receipt_number"] == "55"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_outbox_event_written(self, test_db, sample_account):
        service = ExternalTransactionService()

        await service.handle_event(test_db, "topup.success", _topup(sample_account.id))
        await test_db.commit()

        result = await test_db.execute(select(OutboxEvent.event_type, OutboxEvent.payload))
        event_type, payload = result.one()
        assert event_type == "external_transaction.completed"
        assert payload["transaction_type"] == "AIRTIME_TOPUP"
        assert payload["refunded"] is False


class TestReloadlyWebhook:
    """Reloadly events dispatched through the webhook handler."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_topup_event(self, test_db, webhook_handler, account_factory):
        account = await account_factory(balance_minor=0)
        payload = json.dumps({"event": "topup.failed", "data": _topup(account.id, transaction_id=9)}).encode()

        result = await webhook_handler.process_event(parse_reloadly_event(payload), test_db)

        assert result["status"] == "success"
        assert result["result"]["status"] == FAILED
        assert result["result"]["refund"]["applied"] is True
        assert await _balance(test_db, account.id) == 500
