"""
Prometheus metrics for payment routing and ledger monitoring.

Tracks:
- Routing decisions by provider
- Payment intents by provider and status
- Provider API calls, errors and latency
- Stripe circuit breaker state
- Webhook events by provider and outcome
- Ledger credits, debits and duplicate references
- Outbox queue depth
"""
from prometheus_client import Counter, Gauge, Histogram

# Routing metrics
routing_decisions_total = Counter(
    "routing_decisions_total",
    "Total routing decisions",
    ["provider", "currency"],
)

routing_no_eligible_provider_total = Counter(
    "routing_no_eligible_provider_total",
    "Routing requests with no eligible provider",
    ["currency"],
)

# Payment intent metrics
payment_intents_total = Counter(
    "payment_intents_total",
    "Total payment intents created",
    ["provider", "status", "currency"],
)

payment_intent_amount_minor = Histogram(
    "payment_intent_amount_minor",
    "Payment intent amounts in minor units",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

payment_intent_duration_seconds = Histogram(
    "payment_intent_duration_seconds",
    "Payment intent creation duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Idempotency metrics
idempotency_cache_hits_total = Counter(
    "idempotency_cache_hits_total",
    "Total idempotency cache hits",
    ["source"],  # redis, database, miss
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total provider API requests",
    ["provider", "operation", "status"],
)

provider_api_errors_total = Counter(
    "provider_api_errors_total",
    "Total provider API errors",
    ["provider", "error_type"],  # transient, permanent, rate_limit
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["provider", "event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["provider", "status"],  # processed, duplicate, no_handler, failed
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected on signature verification",
    ["provider"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Ledger metrics
ledger_entries_total = Counter(
    "ledger_entries_total",
    "Ledger entries written",
    ["entry_type", "currency"],
)

ledger_duplicate_references_total = Counter(
    "ledger_duplicate_references_total",
    "Ledger operations skipped because the reference was already applied",
    ["entry_type"],
)

ledger_lock_wait_seconds = Histogram(
    "ledger_lock_wait_seconds",
    "Time spent acquiring the account row lock",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_publish_failures_total = Counter(
    "outbox_publish_failures_total",
    "Outbox events that failed to publish",
    ["event_type"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_routing_decision(provider: str, currency: str) -> None:
        """Record the provider chosen by the router."""
        routing_decisions_total.labels(provider=provider, currency=currency).inc()

    @staticmethod
    def record_no_eligible_provider(currency: str) -> None:
        """Record a routing request nobody could serve."""
        routing_no_eligible_provider_total.labels(currency=currency).inc()

    @staticmethod
    def record_payment_intent(
        provider: str, status: str, currency: str, amount_minor: int, duration_seconds: float
    ) -> None:
        """Record a created payment intent."""
        payment_intents_total.labels(provider=provider, status=status, currency=currency).inc()
        payment_intent_amount_minor.observe(amount_minor)
        payment_intent_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_idempotency_cache_hit(source: str) -> None:
        """Record idempotency cache hit."""
        idempotency_cache_hits_total.labels(source=source).inc()

    @staticmethod
    def record_provider_api_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_api_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_provider_api_error(provider: str, error_type: str) -> None:
        """Record provider API error."""
        provider_api_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(
        provider: str, event_type: str, status: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(provider=provider, event_type=event_type).inc()
        webhook_events_processed_total.labels(provider=provider, status=status).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_webhook_signature_failure(provider: str) -> None:
        """Record a rejected webhook signature."""
        webhook_signature_failures_total.labels(provider=provider).inc()

    @staticmethod
    def record_ledger_entry(entry_type: str, currency: str, lock_wait_seconds: float) -> None:
        """Record a ledger entry written under the account lock."""
        ledger_entries_total.labels(entry_type=entry_type, currency=currency).inc()
        ledger_lock_wait_seconds.observe(lock_wait_seconds)

    @staticmethod
    def record_ledger_duplicate(entry_type: str) -> None:
        """Record a ledger operation skipped for an already-applied reference."""
        ledger_duplicate_references_total.labels(entry_type=entry_type).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_publish_failure(event_type: str) -> None:
        """Record outbox event that stays queued after a failed publish."""
        outbox_publish_failures_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
