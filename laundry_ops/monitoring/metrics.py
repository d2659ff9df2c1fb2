"""
Prometheus metrics for laundry operations monitoring.

Tracks:
- Order status transitions and rejected transitions
- Wallet ledger postings and rejections
- Payment sync outcomes and batch duration
- Tap API calls, errors and circuit breaker state
- Webhook events
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions",
    ["from_status", "to_status", "actor_role"],
)

order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Order status transitions rejected by the state machine",
    ["reason"],  # invalid_transition, not_permitted
)

order_auto_advances_total = Counter(
    "order_auto_advances_total",
    "Orders moved to READY_FOR_DELIVERY after payment settled",
)

# Wallet metrics
wallet_transactions_total = Counter(
    "wallet_transactions_total",
    "Total wallet ledger postings",
    ["transaction_type", "status"],
)

wallet_rejections_total = Counter(
    "wallet_rejections_total",
    "Wallet postings rejected before any write",
    ["reason"],  # insufficient_balance, inactive, invalid_amount
)

wallet_amount_fils = Histogram(
    "wallet_amount_fils",
    "Wallet posting amounts in fils",
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000),
)

# Payment sync metrics
payment_sync_records_total = Counter(
    "payment_sync_records_total",
    "Payment records checked against the gateway",
    ["outcome"],  # match, updated, mismatch_blocked, error
)

payment_sync_duration_seconds = Histogram(
    "payment_sync_duration_seconds",
    "Batch payment sync duration in seconds",
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300),
)

payment_sync_last_run_timestamp = Gauge(
    "payment_sync_last_run_timestamp",
    "Timestamp of last batch payment sync",
)

payment_cleanup_records_total = Counter(
    "payment_cleanup_records_total",
    "Payment records inspected by the correlation id cleanup",
    ["action", "dry_run"],
)

# Tap API metrics
tap_api_requests_total = Counter(
    "tap_api_requests_total",
    "Total Tap API requests",
    ["operation", "status"],
)

tap_api_errors_total = Counter(
    "tap_api_errors_total",
    "Total Tap API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

tap_api_duration_seconds = Histogram(
    "tap_api_duration_seconds",
    "Tap API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 20.0),
)

tap_circuit_breaker_state = Gauge(
    "tap_circuit_breaker_state",
    "Tap circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["status"],  # success, duplicate, not_found, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
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


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_transition(from_status: str, to_status: str, actor_role: str) -> None:
        """Record an applied order transition."""
        order_transitions_total.labels(
            from_status=from_status, to_status=to_status, actor_role=actor_role
        ).inc()

    @staticmethod
    def record_transition_rejected(reason: str) -> None:
        order_transitions_rejected_total.labels(reason=reason).inc()

    @staticmethod
    def record_auto_advance() -> None:
        order_auto_advances_total.inc()

    @staticmethod
    def record_wallet_transaction(transaction_type: str, status: str, amount_fils: int) -> None:
        """Record a wallet ledger posting."""
        wallet_transactions_total.labels(transaction_type=transaction_type, status=status).inc()
        wallet_amount_fils.observe(amount_fils)

    @staticmethod
    def record_wallet_rejection(reason: str) -> None:
        wallet_rejections_total.labels(reason=reason).inc()

    @staticmethod
    def record_sync_outcome(outcome: str) -> None:
        payment_sync_records_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_sync_batch(duration_seconds: float) -> None:
        """Record a finished batch sync."""
        payment_sync_duration_seconds.observe(duration_seconds)
        payment_sync_last_run_timestamp.set(time.time())

    @staticmethod
    def record_cleanup_result(action: str, dry_run: bool) -> None:
        payment_cleanup_records_total.labels(action=action, dry_run=str(dry_run).lower()).inc()

    @staticmethod
    def record_tap_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record Tap API call."""
        tap_api_requests_total.labels(operation=operation, status=status).inc()
        tap_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_tap_api_error(error_type: str) -> None:
        """Record Tap API error."""
        tap_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        tap_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(status=status).inc()
        webhook_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        outbox_events_published_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
