"""
Wallet ledger with row-locked balance updates.

Every balance change follows the same sequence inside the caller's
transaction:

1. SELECT the account row FOR UPDATE
2. Skip if a ledger entry with the same reference id already exists
3. Compute and write the new balance
4. Append the ledger entry

An external reference id therefore moves money at most once, and no balance
is written without holding the row lock for the whole read-modify-write.
The unique constraint on ``ledger_entries.reference_id`` backs this up when
two writers race on different accounts with the same reference; the loser
is rolled back and gets :class:`DuplicateReferenceError`.

Transfers lock both account rows in ascending id order before touching either
balance, and write a debit and a credit entry under derived references.

The service flushes but never commits; the caller owns the transaction.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_routing.database.models import Account, LedgerEntry
from payment_routing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CREDIT = "CREDIT"
DEBIT = "DEBIT"


class LedgerError(Exception):
    """Base exception for ledger errors."""

    pass


class InvalidAmountError(LedgerError):
    """Raised when an amount is zero or negative."""

    pass


class AccountNotFoundError(LedgerError):
    """Raised when the target account does not exist."""

    pass


class AccountExistsError(LedgerError):
    """Raised when a user already holds an account of that currency and type."""

    pass


class CurrencyMismatchError(LedgerError):
    """Raised when the movement currency differs from the account currency."""

    pass


class InsufficientFundsError(LedgerError):
    """Raised when a debit would take the balance below zero."""

    pass


class InvalidTransferError(LedgerError):
    """Raised when a transfer names the same account on both sides."""

    pass


class DuplicateReferenceError(LedgerError):
    """
    Raised when a concurrent writer committed the same reference first.

    The session has been rolled back; the caller must not keep using
    objects loaded in that transaction.
    """

    def __init__(self, reference_id: Optional[str]):
        super().__init__(f"Reference already applied: {reference_id}")
        self.reference_id = reference_id


@dataclass
class LedgerResult:
    """Outcome of a credit or debit."""

    account_id: uuid.UUID
    entry_type: str
    amount_minor: int
    balance_after_minor: int
    reference_id: Optional[str]
    entry_id: Optional[int] = None
    duplicate: bool = False

    @property
    def applied(self) -> bool:
        return not self.duplicate


@dataclass
class TransferResult:
    """Both legs of a transfer."""

    reference_id: str
    debit: LedgerResult
    credit: LedgerResult
    duplicate: bool = False


def transfer_references(reference_id: str) -> Tuple[str, str]:
    """Ledger references of the debit and credit legs."""
    return f"{reference_id}:debit", f"{reference_id}:credit"


class LedgerService:
    """Reads and writes wallet balances and their ledger entries."""

    async def create_account(
        self,
        db: AsyncSession,
        user_id: str,
        currency: str,
        account_type: str = "PERSONAL",
    ) -> Account:
        """
        Open a zero-balance account.

        Raises:
            AccountExistsError: If the user already has this currency/type
        """
        account = Account(
            user_id=user_id,
            currency=currency.upper(),
            account_type=account_type.upper(),
            balance_minor=0,
        )
        db.add(account)
        try:
            await db.flush()
        except IntegrityError as e:
            await db.rollback()
            raise AccountExistsError(
                f"Account already exists for user {user_id} in {currency.upper()}"
            ) from e

        logger.info(
            "account_created",
            account_id=str(account.id),
            user_id=user_id,
            currency=account.currency,
        )
        return account

    async def get_account(self, db: AsyncSession, account_id: uuid.UUID) -> Account:
        """
        Fetch an account without locking it.

        Raises:
            AccountNotFoundError: If no such account exists
        """
        account = await db.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(f"Account not found: {account_id}")
        return account

    async def list_entries(
        self,
        db: AsyncSession,
        account_id: uuid.UUID,
        limit: int = 50,
        offset: int = 0,
    ) -> List[LedgerEntry]:
        """Most recent ledger entries of an account first."""
        await self.get_account(db, account_id)
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def lock_account_stmt(account_id: uuid.UUID):
        """SELECT ... FOR UPDATE on a single account row."""
        return select(Account).where(Account.id == account_id).with_for_update()

    async def _lock_account(
        self, db: AsyncSession, account_id: uuid.UUID
    ) -> Tuple[Account, float]:
        started = time.perf_counter()
        # populate_existing: the row read under the lock must overwrite any
        # stale copy already sitting in the identity map
        result = await db.execute(
            self.lock_account_stmt(account_id).execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(f"Account not found: {account_id}")
        return account, time.perf_counter() - started

    @staticmethod
    async def _find_entry(db: AsyncSession, reference_id: str) -> Optional[LedgerEntry]:
        result = await db.execute(
            select(LedgerEntry).where(LedgerEntry.reference_id == reference_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _entry_result(entry: LedgerEntry, duplicate: bool = False) -> LedgerResult:
        return LedgerResult(
            account_id=entry.account_id,
            entry_type=entry.entry_type,
            amount_minor=abs(entry.amount_minor),
            balance_after_minor=entry.balance_after_minor,
            reference_id=entry.reference_id,
            entry_id=entry.id,
            duplicate=duplicate,
        )

    @staticmethod
    def _check_currency(account: Account, currency: str) -> None:
        if account.currency != currency.upper():
            raise CurrencyMismatchError(
                f"Account {account.id} holds {account.currency}, not {currency.upper()}"
            )

    @staticmethod
    def _post(
        db: AsyncSession,
        account: Account,
        entry_type: str,
        amount_minor: int,
        description: Optional[str],
        reference_id: Optional[str],
    ) -> LedgerEntry:
        """Move the balance of a locked account and stage its ledger entry."""
        if entry_type == CREDIT:
            new_balance = account.balance_minor + amount_minor
            signed_amount = amount_minor
        else:
            if account.balance_minor < amount_minor:
                raise InsufficientFundsError(
                    f"Balance {account.balance_minor} is below debit {amount_minor}"
                )
            new_balance = account.balance_minor - amount_minor
            signed_amount = -amount_minor

        account.balance_minor = new_balance
        entry = LedgerEntry(
            account_id=account.id,
            amount_minor=signed_amount,
            balance_after_minor=new_balance,
            entry_type=entry_type,
            description=description,
            reference_id=reference_id,
        )
        db.add(entry)
        return entry

    @staticmethod
    async def _flush(db: AsyncSession, entry_type: str, reference_id: Optional[str], log: Any) -> None:
        try:
            await db.flush()
        except IntegrityError as e:
            # Same reference applied concurrently, possibly on another account
            await db.rollback()
            metrics.record_ledger_duplicate(entry_type)
            log.warning("ledger_reference_conflict")
            raise DuplicateReferenceError(reference_id) from e

    async def _apply(
        self,
        db: AsyncSession,
        entry_type: str,
        account_id: uuid.UUID,
        amount_minor: int,
        currency: str,
        description: Optional[str],
        reference_id: Optional[str],
    ) -> LedgerResult:
        if amount_minor <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {amount_minor}")

        log = logger.bind(
            account_id=str(account_id),
            entry_type=entry_type,
            amount_minor=amount_minor,
            reference_id=reference_id,
        )

        account, lock_wait = await self._lock_account(db, account_id)

        if reference_id:
            existing = await self._find_entry(db, reference_id)
            if existing is not None:
                metrics.record_ledger_duplicate(entry_type)
                log.info("ledger_reference_already_applied", entry_id=existing.id)
                return self._entry_result(existing, duplicate=True)

        self._check_currency(account, currency)
        entry = self._post(db, account, entry_type, amount_minor, description, reference_id)
        await self._flush(db, entry_type, reference_id, log)

        metrics.record_ledger_entry(entry_type, account.currency, lock_wait)
        log.info(
            "ledger_credit_applied" if entry_type == CREDIT else "ledger_debit_applied",
            entry_id=entry.id,
            balance_after_minor=entry.balance_after_minor,
        )
        return self._entry_result(entry)

    async def transfer(
        self,
        db: AsyncSession,
        from_account_id: uuid.UUID,
        to_account_id: uuid.UUID,
        amount_minor: int,
        currency: str,
        reference_id: str,
        description: Optional[str] = None,
    ) -> TransferResult:
        """
        Move money between two accounts of the same currency, once per reference.

        Both rows are locked in ascending id order, so two transfers running
        in opposite directions between the same accounts cannot deadlock.
        The debit and credit entries carry ``<reference_id>:debit`` and
        ``<reference_id>:credit``.

        Raises:
            InvalidAmountError: If amount is not positive
            InvalidTransferError: If both sides are the same account
            AccountNotFoundError: If either account does not exist
            CurrencyMismatchError: If either account holds another currency
            InsufficientFundsError: If the source balance is too low
            DuplicateReferenceError: If a concurrent writer applied the reference first
        """
        if amount_minor <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {amount_minor}")
        if from_account_id == to_account_id:
            raise InvalidTransferError("Cannot transfer to the same account")

        log = logger.bind(
            from_account_id=str(from_account_id),
            to_account_id=str(to_account_id),
            amount_minor=amount_minor,
            reference_id=reference_id,
        )

        locked: Dict[uuid.UUID, Account] = {}
        lock_wait = 0.0
        for account_id in sorted((from_account_id, to_account_id)):
            locked[account_id], waited = await self._lock_account(db, account_id)
            lock_wait += waited

        debit_ref, credit_ref = transfer_references(reference_id)
        existing_debit = await self._find_entry(db, debit_ref)
        existing_credit = await self._find_entry(db, credit_ref)
        if existing_debit is not None and existing_credit is not None:
            metrics.record_ledger_duplicate("TRANSFER")
            log.info("ledger_transfer_already_applied")
            return TransferResult(
                reference_id=reference_id,
                debit=self._entry_result(existing_debit, duplicate=True),
                credit=self._entry_result(existing_credit, duplicate=True),
                duplicate=True,
            )

        source, target = locked[from_account_id], locked[to_account_id]
        self._check_currency(source, currency)
        self._check_currency(target, currency)

        debit = self._post(db, source, DEBIT, amount_minor, description, debit_ref)
        credit = self._post(db, target, CREDIT, amount_minor, description, credit_ref)
        await self._flush(db, "TRANSFER", reference_id, log)

        metrics.record_ledger_entry(DEBIT, source.currency, lock_wait)
        metrics.record_ledger_entry(CREDIT, target.currency, 0.0)
        log.info(
            "ledger_transfer_applied",
            debit_entry_id=debit.id,
            credit_entry_id=credit.id,
            source_balance_after_minor=debit.balance_after_minor,
        )
        return TransferResult(
            reference_id=reference_id,
            debit=self._entry_result(debit),
            credit=self._entry_result(credit),
        )

    async def credit_account(
        self,
        db: AsyncSession,
        account_id: uuid.UUID,
        amount_minor: int,
        currency: str,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> LedgerResult:
        """
        Credit an account exactly once per reference id.

        Args:
            db: Session whose transaction the update joins
            account_id: Account to credit
            amount_minor: Positive amount in minor units
            currency: Currency of the movement; must match the account
            description: Free text stored on the ledger entry
            reference_id: External reference (webhook event, payment intent)

        Returns:
            LedgerResult: ``duplicate=True`` when the reference was already applied

        Raises:
            InvalidAmountError: If amount is not positive
            AccountNotFoundError: If the account does not exist
            CurrencyMismatchError: If currencies differ
            DuplicateReferenceError: If a concurrent writer applied the reference first
        """
        return await self._apply(
            db, CREDIT, account_id, amount_minor, currency, description, reference_id
        )

    async def debit_account(
        self,
        db: AsyncSession,
        account_id: uuid.UUID,
        amount_minor: int,
        currency: str,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> LedgerResult:
        """
        Debit an account exactly once per reference id.

        Raises:
            InsufficientFundsError: If the balance would go negative
        """
        return await self._apply(
            db, DEBIT, account_id, amount_minor, currency, description, reference_id
        )
