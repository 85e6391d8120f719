"""
Prometheus metrics for order processing.

Tracks:
- Payment intents created
- Payment confirmations by outcome
- Orders created and their totals
- Store failures by operation
- Order status updates
- Newsletter subscription changes
- Stripe API calls and errors
"""
from decimal import Decimal

from prometheus_client import Counter, Histogram

# Payment metrics
payment_intents_total = Counter(
    "payment_intents_total",
    "Total number of payment intents requested",
    ["status", "currency"],  # status: created, failed
)

payment_confirmations_total = Counter(
    "payment_confirmations_total",
    "Total payment confirmations",
    ["outcome"],  # recorded, already_recorded, fallback, not_succeeded
)

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total orders durably recorded",
)

order_total_amount = Histogram(
    "order_total_amount",
    "Order totals in major currency units",
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
)

order_persistence_failures_total = Counter(
    "order_persistence_failures_total",
    "Total database failures",
    ["operation"],
)

order_status_updates_total = Counter(
    "order_status_updates_total",
    "Total order status updates",
    ["status"],
)

# Newsletter metrics
newsletter_changes_total = Counter(
    "newsletter_changes_total",
    "Total newsletter subscription changes",
    ["action"],  # subscribe, unsubscribe
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
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_intent(status: str, currency: str) -> None:
        """Record a payment intent request."""
        payment_intents_total.labels(status=status, currency=currency.lower()).inc()

    @staticmethod
    def record_confirmation(outcome: str) -> None:
        """Record how a payment confirmation was answered."""
        payment_confirmations_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_order_created(total_amount: Decimal) -> None:
        """Record a durably recorded order."""
        orders_created_total.inc()
        order_total_amount.observe(float(total_amount))

    @staticmethod
    def record_persistence_failure(operation: str) -> None:
        """Record a database failure."""
        order_persistence_failures_total.labels(operation=operation).inc()

    @staticmethod
    def record_status_update(status: str) -> None:
        """Record an order status update."""
        order_status_updates_total.labels(status=status).inc()

    @staticmethod
    def record_newsletter_change(action: str) -> None:
        """Record a subscribe or unsubscribe."""
        newsletter_changes_total.labels(action=action).inc()

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


# Export singleton instance
metrics = MetricsCollector()
