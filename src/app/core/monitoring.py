"""Prometheus metrics and Sentry integration.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Deal metrics: transitions, rejected commands, delivery failures
- init_sentry(): Initialize Sentry with deal-aware before_send callback
- get_metrics_response(): Handler body for /metrics
"""

from __future__ import annotations

import time

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Deal Metrics ─────────────────────────────────────────────────────────────

deal_transitions_total = Counter(
    "deal_transitions_total",
    "Committed deal status transitions",
    ["from_status", "to_status"],
)

deal_commands_rejected_total = Counter(
    "deal_commands_rejected_total",
    "Deal commands that failed with a typed error",
    ["command", "error_code"],
)

deal_event_delivery_failures_total = Counter(
    "deal_event_delivery_failures_total",
    "Feed/notification/chat deliveries that exhausted their retries",
    ["step"],
)


def record_transition(from_status: str, to_status: str) -> None:
    deal_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def record_rejected_command(command: str, error_code: str) -> None:
    deal_commands_rejected_total.labels(command=command, error_code=error_code).inc()


def record_delivery_failure(step: str) -> None:
    deal_event_delivery_failures_total.labels(step=step).inc()


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Uses the matched route pattern (``/v1/deals/{deal_id}``) rather than the
    raw path to keep label cardinality bounded. Skips /metrics itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Promote the deal id from request path params to a searchable tag."""
        path_params = (event.get("request") or {}).get("path_params") or {}
        deal_id = path_params.get("deal_id")
        if deal_id:
            event.setdefault("tags", {})["deal_id"] = deal_id
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
