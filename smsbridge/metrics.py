"""
Prometheus metrics for the SMS bridge.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Inbound SMS webhook outcome counter (result)
- Notification outcome counter (status, reason)
- Agent reply counter (outcome)

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

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: invalid_signature, validation_error, invalid_phone, duplicate,
# stored, replied, deadline_exceeded, error
sms_webhook_requests_total = Counter(
    "sms_webhook_requests_total",
    "Total inbound SMS webhook outcomes",
    labelnames=["result"]
)

# status: sent, skipped, failed
# reason: a skip reason, transport or internal for failures, none when sent
notifications_total = Counter(
    "notifications_total",
    "Notification dispatch outcomes per recipient",
    labelnames=["status", "reason"]
)

# outcome: generated, fallback
agent_replies_total = Counter(
    "agent_replies_total",
    "Agent replies produced for inbound SMS",
    labelnames=["outcome"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

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
    sms_webhook_requests_total.labels(result=result).inc()


def record_notification_outcome(status: str, reason: str = "") -> None:
    notifications_total.labels(status=status, reason=reason or "none").inc()


def record_agent_reply(outcome: str) -> None:
    agent_replies_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
