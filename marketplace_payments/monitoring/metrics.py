"""
Prometheus metrics for the order and payment reconciliation engine.

Tracks:
- Order transitions and version conflicts
- Webhook events by kind and outcome
- Idempotency hits
- Stripe API calls, errors and circuit breaker state
- Transfers and refunds
- Reconciliation results
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order state transitions",
    ["from_status", "to_status"],
)

order_transition_rejections_total = Counter(
    "order_transition_rejections_total",
    "Total rejected order transitions",
    ["status", "trigger"],
)

order_version_conflicts_total = Counter(
    "order_version_conflicts_total",
    "Total optimistic concurrency conflicts on orders",
)

orders_flagged_for_review_total = Counter(
    "orders_flagged_for_review_total",
    "Total orders flagged for manual reconciliation",
    ["reason"],
)

checkout_amount_minor_units = Histogram(
    "checkout_amount_minor_units",
    "Checkout totals in minor currency units",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Idempotency metrics
idempotency_hits_total = Counter(
    "idempotency_hits_total",
    "Total idempotency lookups by result",
    ["scope", "result"],  # duplicate, in_progress, reserved, takeover
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit, circuit_open
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
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
    ["kind"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["kind", "status"],  # processed, noop, duplicate, in_progress, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["kind"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Total webhook deliveries rejected at verification",
    ["reason"],
)

# Money movement metrics
transfers_total = Counter(
    "transfers_total",
    "Total seller transfers by status",
    ["status"],
)

refunds_total = Counter(
    "refunds_total",
    "Total refunds by status and source",
    ["status", "source"],
)

# Reconciliation metrics
reconciliation_discrepancies_total = Gauge(
    "reconciliation_discrepancies_total",
    "Total reconciliation discrepancies",
)

reconciliation_discrepancy_amount = Gauge(
    "reconciliation_discrepancy_amount",
    "Reconciliation discrepancy amount in minor units",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation job duration in seconds",
    buckets=(10, 30, 60, 120, 300, 600, 1800),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)

reconciliation_sweep_resolved_total = Counter(
    "reconciliation_sweep_resolved_total",
    "Records resolved by reconciliation sweeps",
    ["sweep", "result"],
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

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        """Record an applied order transition."""
        order_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_rejected_transition(status: str, trigger: str) -> None:
        order_transition_rejections_total.labels(status=status, trigger=trigger).inc()

    @staticmethod
    def record_version_conflict() -> None:
        order_version_conflicts_total.inc()

    @staticmethod
    def record_review_flag(reason: str) -> None:
        orders_flagged_for_review_total.labels(reason=reason).inc()

    @staticmethod
    def record_checkout(amount: int) -> None:
        checkout_amount_minor_units.observe(amount)

    @staticmethod
    def record_idempotency(scope: str, result: str) -> None:
        """Record an idempotency lookup result."""
        idempotency_hits_total.labels(scope=scope, result=result).inc()

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(kind: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(kind=kind).inc()
        webhook_events_processed_total.labels(kind=kind, status=status).inc()
        webhook_processing_duration_seconds.labels(kind=kind).observe(duration_seconds)

    @staticmethod
    def record_signature_failure(reason: str) -> None:
        webhook_signature_failures_total.labels(reason=reason).inc()

    @staticmethod
    def record_transfer(status: str) -> None:
        transfers_total.labels(status=status).inc()

    @staticmethod
    def record_refund(status: str, source: str) -> None:
        refunds_total.labels(status=status, source=source).inc()

    @staticmethod
    def record_sweep(sweep: str, result: str, count: int = 1) -> None:
        if count:
            reconciliation_sweep_resolved_total.labels(sweep=sweep, result=result).inc(count)

    @staticmethod
    def set_reconciliation_metrics(
        discrepancies_count: int, discrepancy_amount: int, duration_seconds: float
    ) -> None:
        """Set reconciliation metrics."""
        reconciliation_discrepancies_total.set(discrepancies_count)
        reconciliation_discrepancy_amount.set(discrepancy_amount)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
