"""
Prometheus metrics for the relay.

This module provides:
- HTTP request counter and latency histogram for the webhook surface
- Update counter by update kind
- Queue outcome counters for the inbound and outbound pipelines
- Bot API error counter

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# kind: message, edited_message, callback_query, unsupported, invalid
telegram_updates_total = Counter(
    "telegram_updates_total",
    "Platform updates dispatched",
    labelnames=["kind"]
)

# result: created, duplicate
inbound_enqueue_total = Counter(
    "inbound_enqueue_total",
    "Inbound queue insert outcomes",
    labelnames=["result"]
)

# result: done, retry, degraded, dropped
inbound_processed_total = Counter(
    "inbound_processed_total",
    "Inbound message processing outcomes",
    labelnames=["result"]
)

# result: sent, retry, dropped, unreachable
outbound_processed_total = Counter(
    "outbound_processed_total",
    "Outbound notification outcomes",
    labelnames=["result"]
)

telegram_api_errors_total = Counter(
    "telegram_api_errors_total",
    "Bot API calls that failed",
    labelnames=["method", "code"]
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


def record_update(kind: str) -> None:
    telegram_updates_total.labels(kind=kind).inc()


def record_enqueue(result: str) -> None:
    inbound_enqueue_total.labels(result=result).inc()


def record_inbound_outcome(result: str) -> None:
    inbound_processed_total.labels(result=result).inc()


def record_outbound_outcome(result: str) -> None:
    outbound_processed_total.labels(result=result).inc()


def record_api_error(method: str, code) -> None:
    # code is None for transport failures
    telegram_api_errors_total.labels(method=method, code=str(code) if code is not None else "transport").inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
