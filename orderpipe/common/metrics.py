"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
order_intents_total = Counter(
    "order_intents_total",
    "Order intents created by provider and outcome",
    ["service", "provider", "outcome"],
)
gateway_call_seconds = Histogram(
    "gateway_call_seconds",
    "Latency of outbound payment gateway calls",
    ["provider", "operation"],
)
gateway_errors_total = Counter(
    "gateway_errors_total",
    "Gateway calls that timed out or returned an unusable response",
    ["provider", "operation", "error_type"],
)
verification_outcomes_total = Counter(
    "verification_outcomes_total",
    "Server-to-server verification results",
    ["service", "provider", "status"],
)
amount_mismatch_total = Counter(
    "amount_mismatch_total",
    "Verifications where the gateway confirmed a different amount",
    ["service", "provider"],
)
duplicate_notifications_total = Counter(
    "duplicate_notifications_total",
    "Notifications short-circuited by an existing verification record",
    ["service", "provider"],
)
inventory_version_conflicts_total = Counter(
    "inventory_version_conflicts_total",
    "Stock row writes rejected by the version guard",
    ["operation"],
)
jobs_processed_total = Counter(
    "jobs_processed_total",
    "Jobs executed by the order worker",
    ["service", "job_type", "result"],
)
job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Order worker job execution time",
    ["service", "job_type"],
)
notifications_total = Counter(
    "notifications_total",
    "Notification send attempts",
    ["template", "status"],
)
job_queue_pending_total = Gauge(
    "job_queue_pending_total",
    "Jobs waiting in or holding the queue (pending or processing)",
    ["service"],
)
job_queue_oldest_pending_age_seconds = Gauge(
    "job_queue_oldest_pending_age_seconds",
    "Age in seconds of the oldest unfinished job",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
