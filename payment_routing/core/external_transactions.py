"""
Third-party purchases (airtime top-ups, gift cards, bill payments).

The wallet is debited when the purchase is placed; the provider reports the
outcome later by webhook. Success completes the record, failure marks it
failed and returns the money to the wallet, once per provider transaction.
"""
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_routing.core.ledger import (
    DuplicateReferenceError,
    LedgerError,
    LedgerResult,
    LedgerService,
)
from payment_routing.core.outbox import add_outbox_event
from payment_routing.database.models import ExternalTransaction, utcnow
from payment_routing.utils.money import to_minor

logger = structlog.get_logger(__name__)

COMPLETED = "COMPLETED"
FAILED = "FAILED"

# Reloadly event prefix -> (transaction type, fallback id prefix)
TRANSACTION_KINDS = {
    "topup": ("AIRTIME_TOPUP", "reloadly"),
    "giftcard.order": ("GIFT_CARD", "reloadly-gc"),
    "bill.payment": ("BILL_PAYMENT", "reloadly-bill"),
}


class UnknownExternalEventError(ValueError):
    """Raised for event types with no external transaction mapping."""

    pass


@dataclass
class ExternalTransactionResult:
    """What handling one provider event did."""

    transaction_id: uuid.UUID
    provider_transaction_id: str
    status: str
    refund: Optional[LedgerResult] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "transaction_id": str(self.transaction_id),
            "provider_transaction_id": self.provider_transaction_id,
            "status": self.status,
        }
        if self.refund is not None:
            result["refund"] = {
                "applied": self.refund.applied,
                "amount_minor": self.refund.amount_minor,
                "balance_after_minor": self.refund.balance_after_minor,
            }
        return result


def parse_custom_identifier(custom_id: Optional[str]) -> Tuple[Optional[str], Optional[uuid.UUID]]:
    """
    Split ``<prefix>-<user id>-<account id>`` into user and account.

    The account id is a UUID and contains hyphens itself, so at most two
    splits are made.
    """
    if not custom_id:
        return None, None
    parts = custom_id.split("-", 2)
    user_id = parts[1] if len(parts) > 1 and parts[1] else None
    account_id = None
    if len(parts) > 2 and parts[2]:
        try:
            account_id = uuid.UUID(parts[2])
        except ValueError:
            logger.warning("external_transaction_bad_account_id", custom_identifier=custom_id)
    return user_id, account_id


def split_event_type(event_type: str) -> Tuple[str, bool]:
    """
    Map ``topup.success`` style events to (kind, succeeded).

    Raises:
        UnknownExternalEventError: For anything else
    """
    kind, _, outcome = event_type.rpartition(".")
    if kind not in TRANSACTION_KINDS or outcome not in ("success", "failed"):
        raise UnknownExternalEventError(event_type)
    return kind, outcome == "success"


class ExternalTransactionService:
    """Upserts external transactions from provider webhooks."""

    def __init__(self, ledger: Optional[LedgerService] = None, provider: str = "RELOADLY"):
        self.ledger = ledger or LedgerService()
        self.provider = provider

    async def _get(self, db: AsyncSession, provider_transaction_id: str) -> Optional[ExternalTransaction]:
        result = await db.execute(
            select(ExternalTransaction).where(
                ExternalTransaction.provider_transaction_id == provider_transaction_id
            )
        )
        return result.scalar_one_or_none()

    async def handle_event(
        self, db: AsyncSession, event_type: str, data: Dict[str, Any]
    ) -> ExternalTransactionResult:
        """
        Apply a Reloadly outcome event.

        Args:
            db: Database session; the caller commits
            event_type: e.g. ``topup.failed``
            data: Event ``data`` object

        Returns:
            ExternalTransactionResult: Upserted record and any refund
        """
        kind, succeeded = split_event_type(event_type)
        transaction_type, id_prefix = TRANSACTION_KINDS[kind]

        raw_id = data.get("transactionId")
        provider_transaction_id = str(raw_id) if raw_id is not None else f"{id_prefix}-{uuid.uuid4().hex}"
        user_id, account_id = parse_custom_identifier(data.get("customIdentifier"))
        currency = str(data.get("currency") or data.get("currencyCode") or "USD").upper()
        amount = data.get("amount") or 0
        amount_minor = to_minor(amount, currency)
        status = COMPLETED if succeeded else FAILED
        error_message = None if succeeded else (
            data.get("errorMessage") or data.get("message") or f"{transaction_type} failed"
        )

        log = logger.bind(
            provider_transaction_id=provider_transaction_id,
            transaction_type=transaction_type,
            status=status,
        )

        record = await self._get(db, provider_transaction_id)
        if record is None:
            record = ExternalTransaction(
                provider=self.provider,
                provider_transaction_id=provider_transaction_id,
                user_id=user_id or "unknown",
                account_id=account_id,
                transaction_type=transaction_type,
                status=status,
                amount_minor=amount_minor,
                currency=currency,
                recipient_details=self._recipient_details(kind, data),
            )
            db.add(record)
            log.info("external_transaction_created")
        else:
            if record.status == COMPLETED and not succeeded:
                log.warning("external_transaction_failed_after_completion")
            record.status = status
            log.info("external_transaction_updated")

        record.error_message = error_message
        record.webhook_received = True
        record.webhook_data = data
        record.completed_at = utcnow() if succeeded else None
        await db.flush()

        refund = None
        if not succeeded and record.account_id is not None and record.amount_minor > 0:
            refund = await self._refund(db, record, log)

        add_outbox_event(
            db,
            aggregate_id=record.id,
            aggregate_type="external_transaction",
            event_type=f"external_transaction.{status.lower()}",
            payload={
                "transaction_id": str(record.id),
                "provider_transaction_id": provider_transaction_id,
                "transaction_type": transaction_type,
                "user_id": record.user_id,
                "amount_minor": record.amount_minor,
                "currency": record.currency,
                "status": status,
                "refunded": bool(refund and refund.applied),
            },
        )
        await db.flush()

        return ExternalTransactionResult(
            transaction_id=record.id,
            provider_transaction_id=provider_transaction_id,
            status=status,
            refund=refund,
        )

    async def _refund(
        self, db: AsyncSession, record: ExternalTransaction, log: Any
    ) -> Optional[LedgerResult]:
        """Return the purchase amount to the wallet; a ledger refusal is recorded, not raised."""
        try:
            refund = await self.ledger.credit_account(
                db,
                account_id=record.account_id,
                amount_minor=record.amount_minor,
                currency=record.currency,
                description=f"Refund for failed {record.transaction_type.lower().replace('_', ' ')}",
                reference_id=f"external_refund:{record.provider}:{record.provider_transaction_id}",
            )
        except DuplicateReferenceError:
            raise
        except LedgerError as e:
            log.error("external_transaction_refund_failed", error=str(e))
            record.error_message = f"{record.error_message}; refund failed: {e}"
            return None
        return refund

    @staticmethod
    def _recipient_details(kind: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if kind == "topup":
            return {"phone": data.get("recipientPhone"), "operator": data.get("operatorName")}
        if kind == "giftcard.order":
            return {"email": data.get("recipientEmail"), "product": data.get("productName")}
        return {
            "biller": data.get("billerName"),
            "account_number": data.get("subscriberAccountNumber"),
            "receipt_number": data.get("receiptNumber") or data.get("receipt") or raw_str(data.get("transactionId")),
        }


def raw_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
