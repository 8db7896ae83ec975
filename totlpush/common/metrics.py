"""Prometheus metric definitions for the dispatcher."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


notifications_dispatched_total = Counter(
    "notifications_dispatched_total",
    "Per-user dispatch outcomes",
    ["service", "notification_key", "result"],
)
dispatch_duration_seconds = Histogram(
    "dispatch_duration_seconds",
    "Wall-clock duration of one intent dispatch",
    ["service", "notification_key"],
)
provider_requests_total = Counter(
    "provider_requests_total",
    "Push provider HTTP calls by outcome",
    ["service", "endpoint", "outcome"],
)
provider_latency_seconds = Histogram(
    "provider_latency_seconds",
    "Push provider HTTP latency seconds",
    ["service", "endpoint"],
)
policy_fail_open_total = Counter(
    "policy_fail_open_total",
    "Policy lookups that errored and were allowed through",
    ["service", "check"],
)
subscriptions_unsubscribed_total = Counter(
    "subscriptions_unsubscribed_total",
    "Devices flipped to unsubscribed after provider feedback",
    ["service", "source"],
)
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
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
