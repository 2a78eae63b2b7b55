"""
Prometheus metrics for the chat relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook event counter (result)
- Outbound send counter (message_type, result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Path label is the route template (/groups/{group_id}) so ids do not explode cardinality
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, duplicate, skipped, status, invalid_signature, validation_error
webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound webhook events by processing outcome",
    labelnames=["result"]
)

# result: sent, failed
outbound_sends_total = Counter(
    "outbound_sends_total",
    "Outbound provider sends by message type and outcome",
    labelnames=["message_type", "result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template, or the raw path when no route matched
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_webhook_outcome(result: str, count: int = 1) -> None:
    if count > 0:
        webhook_events_total.labels(result=result).inc(count)


def record_outbound_send(message_type: str, result: str) -> None:
    outbound_sends_total.labels(message_type=message_type, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
