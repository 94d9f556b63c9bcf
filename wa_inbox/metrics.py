"""
Prometheus metrics for the inbox API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook outcome counter (result)
- Status callback correlation counter (result)
- Outbound send counter (result)
- Live event counter (type) and connected subscriber gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: accepted, validation_error, invalid_signature, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total inbound webhook outcomes",
    labelnames=["result"]
)

# result: matched, unmatched
status_callbacks_total = Counter(
    "status_callbacks_total",
    "Delivery status callbacks by correlation outcome",
    labelnames=["result"]
)

# result: sent, validation_error, transport_error, error
outbound_messages_total = Counter(
    "outbound_messages_total",
    "Outbound send attempts by outcome",
    labelnames=["result"]
)

live_events_total = Counter(
    "live_events_total",
    "Events broadcast to live subscribers",
    labelnames=["type"]
)

live_subscribers = Gauge(
    "live_subscribers",
    "Currently connected live event subscribers"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Media proxy paths carry provider ids; they are collapsed to keep label
    cardinality bounded.
    """
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/media/"):
        normalized_path = "/".join(normalized_path.split("/")[:3])

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_status_callback(matched: bool) -> None:
    status_callbacks_total.labels(result="matched" if matched else "unmatched").inc()


def record_outbound(result: str) -> None:
    outbound_messages_total.labels(result=result).inc()


def record_live_event(event_type: str) -> None:
    live_events_total.labels(type=event_type or "unknown").inc()


def set_live_subscribers(count: int) -> None:
    live_subscribers.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
