"""Prometheus metrics for monitoring charges, reconciliation and the billing clock"""

from prometheus_client import Counter, Histogram

from lease_billing.domain.models import ClockRunSummary

# Ledger metrics
payment_transition_counter = Counter(
    "lease_billing_payment_transitions_total",
    "Payment status transitions written to the ledger",
    ["from_status", "to_status"],
)

late_fee_counter = Counter(
    "lease_billing_late_fees_created_total",
    "Late-fee payments created",
)

# Gateway metrics
gateway_latency_histogram = Histogram(
    "lease_billing_gateway_latency_seconds",
    "Payment gateway response time",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

gateway_failure_counter = Counter(
    "lease_billing_gateway_failures_total",
    "Failed payment gateway calls",
    ["operation", "kind"],  # unavailable | rate_limited | declined | request
)

# Webhook metrics
webhook_event_counter = Counter(
    "lease_billing_webhook_events_total",
    "Gateway events received by outcome",
    ["kind", "outcome"],  # applied | duplicate | ignored | not_found | conflict
)

# Billing clock metrics
clock_schedule_counter = Counter(
    "lease_billing_clock_schedules_total",
    "Billing clock per-schedule outcomes",
    ["outcome"],  # succeeded | failed | skipped | payment_method_required | error
)

# Notification metrics
notification_failure_counter = Counter(
    "lease_billing_notification_failures_total",
    "Billing events that could not be delivered",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_clock_run(summary: ClockRunSummary) -> None:
    """Record per-schedule outcomes of one billing clock pass"""
    clock_schedule_counter.labels(outcome="succeeded").inc(summary.succeeded)
    clock_schedule_counter.labels(outcome="failed").inc(summary.failed)
    clock_schedule_counter.labels(outcome="skipped").inc(summary.skipped)
    clock_schedule_counter.labels(outcome="payment_method_required").inc(summary.payment_method_required)
    clock_schedule_counter.labels(outcome="error").inc(len(summary.errors))
    late_fee_counter.inc(summary.late_fees_created)
