"""Prometheus metrics for the billing service.

Everything lives in a dedicated registry exposed at ``/metrics``. Callers
record through the small helpers below rather than touching label sets.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    Info,
    generate_latest,
)

REGISTRY = CollectorRegistry()

APP_INFO = Info("coaching_billing", "Billing service build information", registry=REGISTRY)


# ==================== HTTP ====================

HTTP_REQUESTS_TOTAL = Counter(
    "billing_http_requests_total",
    "HTTP requests served",
    ["method", "route", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "billing_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "route"],
    buckets=(0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)


# ==================== Payment provider ====================

PROVIDER_REQUESTS_TOTAL = Counter(
    "billing_provider_requests_total",
    "Calls made to the payment provider",
    ["operation", "outcome"],
    registry=REGISTRY,
)

PROVIDER_REQUEST_DURATION_SECONDS = Histogram(
    "billing_provider_request_duration_seconds",
    "Payment provider call latency",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=REGISTRY,
)


# ==================== Reconciliation ====================

DUPLICATE_SUBSCRIPTIONS_DETECTED_TOTAL = Counter(
    "billing_duplicate_subscriptions_detected_total",
    "Resolutions that found more than one active subscription",
    registry=REGISTRY,
)

CUSTOMER_RECOVERIES_TOTAL = Counter(
    "billing_customer_recoveries_total",
    "Customer mappings healed after the provider lost the customer",
    ["outcome"],
    registry=REGISTRY,
)

PLAN_CHANGES_TOTAL = Counter(
    "billing_plan_changes_total",
    "Plan change executions",
    ["change_type", "outcome"],
    registry=REGISTRY,
)


def observe_http_request(method: str, route: str, status_code: int, seconds: float) -> None:
    HTTP_REQUESTS_TOTAL.labels(method=method, route=route, status_code=str(status_code)).inc()
    HTTP_REQUEST_DURATION_SECONDS.labels(method=method, route=route).observe(seconds)


def observe_provider_call(operation: str, outcome: str, seconds: float) -> None:
    """Record one provider call.

    ``outcome`` is ``success``, ``not_found``, ``unavailable`` or ``rejected``.
    """
    PROVIDER_REQUESTS_TOTAL.labels(operation=operation, outcome=outcome).inc()
    PROVIDER_REQUEST_DURATION_SECONDS.labels(operation=operation).observe(seconds)


def record_customer_recovery(outcome: str) -> None:
    CUSTOMER_RECOVERIES_TOTAL.labels(outcome=outcome).inc()


def record_duplicate_subscriptions() -> None:
    DUPLICATE_SUBSCRIPTIONS_DETECTED_TOTAL.inc()


def record_plan_change(change_type: str, outcome: str) -> None:
    PLAN_CHANGES_TOTAL.labels(change_type=change_type, outcome=outcome).inc()


def render_metrics() -> tuple[bytes, str]:
    """Serialize the registry for a scrape, with its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})
