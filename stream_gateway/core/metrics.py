"""Prometheus metrics for the gateway and its client."""

import time

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("stream_gateway", "Streaming inference gateway info")
APP_INFO.info({"version": "1.0.0", "name": "stream_gateway"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds (time to first byte for streams)",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

GATEWAY_REQUESTS = Counter(
    "gateway_generations_total",
    "Generation requests relayed to the upstream model",
    ["modality", "outcome"],
)

GATEWAY_STREAM_CHUNKS = Counter(
    "gateway_stream_chunks_total",
    "Text chunks relayed to callers",
)

CLIENT_RETRIES = Counter(
    "gateway_client_retries_total",
    "Client-side retries of transient gateway failures",
    ["status"],
)


# --- Middleware ---


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = request.url.path

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
