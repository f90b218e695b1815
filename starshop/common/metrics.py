"""Prometheus metric definitions shared across the payment core."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


gateway_requests_total = Counter(
    "gateway_requests_total",
    "Gateway calls by operation and outcome",
    ["operation", "outcome"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
rate_fallback_total = Counter(
    "rate_fallback_total",
    "Conversions that used the fallback exchange rate",
    ["reason"],
)
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Checkout initiations by outcome",
    ["outcome"],
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
