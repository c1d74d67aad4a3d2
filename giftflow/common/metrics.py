"""Prometheus metric definitions shared by the gift and delivery services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


gift_requests_total = Counter("gift_requests_total", "Total voucher gift requests", ["service"])
gift_rejected_total = Counter(
    "gift_rejected_total",
    "Voucher gift requests rejected before creation",
    ["service", "reason"],
)
gift_created_total = Counter("gift_created_total", "Voucher gifts created", ["service", "high_value"])
idempotent_replays_total = Counter(
    "idempotent_replays_total",
    "Submissions answered from an existing idempotency mapping",
    ["service"],
)
idempotency_store_errors_total = Counter(
    "idempotency_store_errors_total",
    "Idempotency store read/write failures",
    ["service", "operation"],
)
idempotency_in_flight_total = Counter(
    "idempotency_in_flight_total",
    "Submissions refused because the same key was still being processed",
    ["service"],
)
publish_failures_total = Counter(
    "publish_failures_total",
    "Queue publish failures left to the outbox relay",
    ["service"],
)
submission_latency_seconds = Histogram("submission_latency_seconds", "Submission latency seconds", ["service"])
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
rate_limited_total = Counter("rate_limited_total", "Requests rejected by the rate limiter", ["service"])

delivery_processed_total = Counter(
    "delivery_processed_total",
    "Delivery messages handled, by outcome",
    ["service", "outcome"],
)
delivery_failed_total = Counter(
    "delivery_failed_total",
    "Delivery messages that ended with the voucher FAILED",
    ["service", "error_type"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
dlq_total = Counter("dlq_total", "Messages routed to dead-letter handling", ["service", "reason"])
delivery_processing_seconds = Histogram(
    "delivery_processing_seconds",
    "Time spent handling one delivery message",
    ["service"],
)
delivery_last_success_timestamp = Gauge(
    "delivery_last_success_timestamp",
    "Unix time of the last successful delivery",
    ["service"],
)
delivery_last_failure_timestamp = Gauge(
    "delivery_last_failure_timestamp",
    "Unix time of the last failed delivery",
    ["service"],
)
stale_transitions_total = Counter(
    "stale_transitions_total",
    "Status updates rejected because the voucher was already terminal",
    ["service", "attempted"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Delay seconds between publish and first receive",
    ["service", "queue"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
