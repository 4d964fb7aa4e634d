"""
Prometheus metrics for the referral engine.
"""
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.openmetrics.exposition import generate_latest as generate_latest_openmetrics
from fastapi import Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import time


# Request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Referral lifecycle
referral_purchases_registered_total = Counter(
    'referral_purchases_registered_total',
    'Purchases registered under a referral',
    ['new_referral']
)

# Daily accrual
referral_commissions_credited_total = Counter(
    'referral_commissions_credited_total',
    'Daily commission credits written to the ledger'
)

referral_commission_amount_total = Counter(
    'referral_commission_amount_total',
    'Sum of credited daily commissions in base currency'
)

accrual_runs_total = Counter(
    'accrual_runs_total',
    'Daily accrual job runs',
    ['result']
)

accrual_record_failures_total = Counter(
    'accrual_record_failures_total',
    'Referral records skipped because their accrual pass failed'
)

accrual_run_duration_seconds = Histogram(
    'accrual_run_duration_seconds',
    'Duration of one daily accrual run',
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0]
)

# Withdrawals
withdrawal_requests_total = Counter(
    'withdrawal_requests_total',
    'Withdrawal requests by outcome',
    ['result']
)

withdrawal_status_updates_total = Counter(
    'withdrawal_status_updates_total',
    'Admin withdrawal status changes',
    ['status']
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        endpoint = request.url.path

        # Skip metrics endpoint itself
        if endpoint == "/metrics":
            return await call_next(request)

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.time() - start_time
            http_requests_total.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=status_code
            ).inc()
            http_request_duration_seconds.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(duration)

        return response


def get_metrics_response(openmetrics: bool = False) -> Response:
    """
    Get Prometheus metrics response.

    Args:
        openmetrics: If True, return OpenMetrics format, else Prometheus format
    """
    if openmetrics:
        content = generate_latest_openmetrics()
        content_type = "application/openmetrics-text; version=1.0.0; charset=utf-8"
    else:
        content = generate_latest()
        content_type = CONTENT_TYPE_LATEST

    return Response(content=content, media_type=content_type)
