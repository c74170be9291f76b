"""
Prometheus metrics for order and payment lifecycle monitoring.

Tracks:
- Order creation (new vs idempotent replay)
- Order transitions applied and rejected
- Payment intent creation outcomes
- Webhook events by outcome
- Reconciliation conflicts awaiting review
- Stripe API calls
- HTTP request duration
"""
from prometheus_client import Counter, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total order create requests",
    ["result"],  # created, replayed
)

order_transitions_total = Counter(
    "order_transitions_total",
    "Total order state transitions attempted",
    ["transition", "result"],  # applied, rejected
)

# Payment intent metrics
payment_intents_total = Counter(
    "payment_intents_total",
    "Total payment intent create requests",
    ["result"],  # created, replayed, conflict, provider_error
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook events handled",
    ["event_type", "status"],  # processed, noop, ignored, conflict, ...
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
reconciliation_conflicts_total = Counter(
    "reconciliation_conflicts_total",
    "Total reconciliation conflicts recorded for review",
    ["kind"],
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# HTTP metrics
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "status_code"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(result: str) -> None:
        orders_created_total.labels(result=result).inc()

    @staticmethod
    def record_order_transition(transition: str, result: str) -> None:
        order_transitions_total.labels(transition=transition, result=result).inc()

    @staticmethod
    def record_payment_intent(result: str) -> None:
        payment_intents_total.labels(result=result).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_reconciliation_conflict(kind: str) -> None:
        reconciliation_conflicts_total.labels(kind=kind).inc()

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_http_request(method: str, status_code: int, duration_seconds: float) -> None:
        http_request_duration_seconds.labels(
            method=method, status_code=str(status_code)
        ).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
