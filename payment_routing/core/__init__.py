"""Core payment routing logic."""
from .external_transactions import ExternalTransactionService
from .idempotency import IdempotencyManager
from .ledger import LedgerService
from .outbox import OutboxPublisher
from .payment_intents import PaymentIntentService
from .router import determine_optimal_provider
from .routing_analytics import RoutingAnalytics

__all__ = [
    "ExternalTransactionService",
    "IdempotencyManager",
    "LedgerService",
    "OutboxPublisher",
    "PaymentIntentService",
    "RoutingAnalytics",
    "determine_optimal_provider",
]
