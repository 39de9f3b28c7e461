"""Database package for payment routing."""
from .connection import get_db, init_db
from .models import (
    Account,
    Base,
    ExternalTransaction,
    LedgerEntry,
    OutboxEvent,
    PaymentIntent,
    WebhookEvent,
)

__all__ = [
    "Base",
    "Account",
    "LedgerEntry",
    "PaymentIntent",
    "ExternalTransaction",
    "WebhookEvent",
    "OutboxEvent",
    "get_db",
    "init_db",
]
