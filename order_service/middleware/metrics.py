import time

from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_COUNT = Counter(
    "order_http_requests_total",
    "HTTP requests handled by the order service",
    ["method", "route", "status"],
)

REQUEST_LATENCY = Histogram(
    "order_http_request_duration_seconds",
    "HTTP request latency, saga included",
    ["method", "route"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

REQUESTS_IN_PROGRESS = Gauge(
    "order_http_requests_in_progress",
    "HTTP requests currently being served",
)


def _route_template(request: Request) -> str:
    # Label by route template so /orders/<uuid> does not explode cardinality
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        start = time.perf_counter()
        REQUESTS_IN_PROGRESS.inc()
        try:
            response = await call_next(request)
        finally:
            REQUESTS_IN_PROGRESS.dec()
        elapsed = time.perf_counter() - start

        route = _route_template(request)
        REQUEST_COUNT.labels(method=request.method, route=route, status=str(response.status_code)).inc()
        REQUEST_LATENCY.labels(method=request.method, route=route).observe(elapsed)

        return response
