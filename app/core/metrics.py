"""
Prometheus metrics instrumentation.
Adds custom metrics for monitoring API, providers and the polling loop.
"""
from prometheus_client import Counter, Histogram, Gauge, Info
import time
from functools import wraps
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

# API Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency',
    ['method', 'endpoint']
)

http_requests_in_progress = Gauge(
    'http_requests_in_progress',
    'HTTP requests currently in progress',
    ['method', 'endpoint']
)

# Provider Metrics
provider_requests_total = Counter(
    'provider_requests_total',
    'Total requests to flight data providers',
    ['provider', 'outcome']
)

api_budget_remaining = Gauge(
    'api_budget_remaining',
    'Primary provider requests remaining this month'
)

# Reconciliation Metrics
reconciliations_total = Counter(
    'reconciliations_total',
    'Total reconciliation passes',
    ['mode', 'outcome']
)

poll_cycle_duration_seconds = Histogram(
    'poll_cycle_duration_seconds',
    'Duration of a background poll cycle'
)

# Notification Metrics
notifications_sent_total = Counter(
    'notifications_sent_total',
    'Total subscriber notifications',
    ['status']
)

# Cleanup Metrics
flights_cleaned_total = Counter(
    'flights_cleaned_total',
    'Flights deactivated or deleted by lifecycle cleanup',
    ['action']
)

# Application Info
app_info = Info('skyalert_backend', 'Application information')
app_info.info({
    'version': '1.0.0',
    'name': 'SkyAlert Backend'
})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect HTTP metrics.
    """

    async def dispatch(self, request: Request, call_next):
        method = request.method
        endpoint = request.url.path

        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()

        start_time = time.time()

        try:
            response = await call_next(request)
            status = response.status_code

            http_requests_total.labels(
                method=method,
                endpoint=endpoint,
                status=status
            ).inc()

            duration = time.time() - start_time
            http_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint
            ).observe(duration)

            return response

        finally:
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()


def track_poll_cycle():
    """
    Decorator to track background poll cycle duration.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                return await func(*args, **kwargs)
            finally:
                poll_cycle_duration_seconds.observe(time.time() - start_time)

        return wrapper
    return decorator
