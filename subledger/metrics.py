from __future__ import annotations

import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP requests resulting in server errors",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "In-progress HTTP requests",
    ["method", "path"],
)
PLANS_CREATED = Counter(
    "ledger_plans_created_total",
    "Total subscription plans created",
)
PAYMENTS = Counter(
    "ledger_payments_total",
    "Successful subscription payments",
    ["kind"],
)
PAYMENT_UNITS = Counter(
    "ledger_payment_units_total",
    "Asset units collected from subscribers",
    ["kind"],
)
PAYMENT_FAILURES = Counter(
    "ledger_payment_failures_total",
    "Subscription payments rejected by the asset ledger",
    ["kind"],
)
WITHDRAWALS = Counter(
    "ledger_withdrawals_total",
    "Creator earnings withdrawals",
)
WITHDRAWN_UNITS = Counter(
    "ledger_withdrawn_units_total",
    "Asset units paid out to creators",
)
CANCELLATIONS = Counter(
    "ledger_cancellations_total",
    "Subscriptions canceled",
)
TXN_CONFLICTS = Counter(
    "ledger_transaction_conflicts_total",
    "Commits rejected because an item changed after it was read",
)
UPTIME_SECONDS = Gauge(
    "app_uptime_seconds",
    "Application uptime in seconds",
)
APP_INFO = Info(
    "app",
    "Application metadata",
)

_START_TIME = time.monotonic()


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    if route and getattr(route, "path", None):
        return route.path
    return request.url.path


def record_plan_created() -> None:
    PLANS_CREATED.inc()


def record_payment(kind: str, amount: int) -> None:
    PAYMENTS.labels(kind=kind).inc()
    PAYMENT_UNITS.labels(kind=kind).inc(amount)


def record_payment_failure(kind: str) -> None:
    PAYMENT_FAILURES.labels(kind=kind).inc()


def record_withdrawal(amount: int) -> None:
    WITHDRAWALS.inc()
    WITHDRAWN_UNITS.inc(amount)


def record_cancellation() -> None:
    CANCELLATIONS.inc()


def record_txn_conflict() -> None:
    TXN_CONFLICTS.inc()


async def metrics_middleware(request: Request, call_next: Callable[[Request], Response]) -> Response:
    path = _route_path(request)
    method = request.method
    start = time.perf_counter()
    IN_PROGRESS.labels(method=method, path=path).inc()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        IN_PROGRESS.labels(method=method, path=path).dec()
        REQUEST_LATENCY.labels(method=method, path=path).observe(time.perf_counter() - start)
        REQUEST_COUNT.labels(method=method, path=path, status=str(status_code)).inc()
        if status_code >= 500:
            REQUEST_ERRORS.labels(method=method, path=path, status=str(status_code)).inc()


def set_app_info(name: str, version: str) -> None:
    APP_INFO.info({"name": name, "version": version})


def metrics_endpoint() -> Response:
    UPTIME_SECONDS.set(time.monotonic() - _START_TIME)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
