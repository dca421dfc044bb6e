"""Unit tests for observability: metrics, request logging, Sentry, health.

Tests cover:
- Deal Prometheus counters (transitions, rejected commands, delivery failures)
- Rejected commands counted through DealLifecycleManager
- MetricsMiddleware labels by route pattern, LoggingMiddleware X-Request-ID
- init_sentry before_send tags the deal id
- Liveness and readiness endpoints
- Settings defaults and deal_link
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.app.api.middleware.logging import LoggingMiddleware
from src.app.api.v1 import health
from src.app.config import EventBackend, Settings
from src.app.core.monitoring import (
    MetricsMiddleware,
    deal_commands_rejected_total,
    deal_event_delivery_failures_total,
    deal_transitions_total,
    get_metrics_response,
    http_requests_total,
    init_sentry,
    record_delivery_failure,
    record_rejected_command,
    record_transition,
)
from src.app.deals.errors import NotAuthorized

ADVERTISER = "adv-1001"
CREATOR = "cre-2002"


# ── Deal Metrics ─────────────────────────────────────────────────────────────


class TestDealMetrics:
    """Counters exposed for deal commands and deliveries."""

    def test_record_transition(self):
        counter = deal_transitions_total.labels(from_status="review", to_status="completed")
        before = counter._value.get()
        record_transition("review", "completed")
        assert counter._value.get() == before + 1

    def test_record_rejected_command(self):
        counter = deal_commands_rejected_total.labels(
            command="accept_terms", error_code="version_conflict"
        )
        before = counter._value.get()
        record_rejected_command("accept_terms", "version_conflict")
        assert counter._value.get() == before + 1

    def test_record_delivery_failure(self):
        counter = deal_event_delivery_failures_total.labels(step="chat")
        before = counter._value.get()
        record_delivery_failure("chat")
        assert counter._value.get() == before + 1

    def test_metrics_response_exposes_deal_counters(self):
        record_transition("pending", "briefing")
        response = get_metrics_response()
        assert response.media_type.startswith("text/plain")
        assert b"deal_transitions_total" in response.body

    @pytest.mark.asyncio
    async def test_manager_counts_rejections_and_transitions(self, manager, create_deal):
        rejected = deal_commands_rejected_total.labels(
            command="accept_terms", error_code="not_authorized"
        )
        moved = deal_transitions_total.labels(from_status="pending", to_status="briefing")
        rejected_before = rejected._value.get()
        moved_before = moved._value.get()

        deal_id = await create_deal()
        with pytest.raises(NotAuthorized):
            await manager.accept_terms(deal_id, ADVERTISER)
        await manager.accept_terms(deal_id, CREATOR)

        assert rejected._value.get() == rejected_before + 1
        assert moved._value.get() == moved_before + 1


# ── Middleware ───────────────────────────────────────────────────────────────


def _middleware_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    @app.get("/v1/deals/{deal_id}")
    async def read(deal_id: str):
        return {"id": deal_id}

    return app


class TestMiddleware:
    @pytest.mark.asyncio
    async def test_request_id_header(self):
        transport = ASGITransport(app=_middleware_app())
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            first = await client.get("/v1/deals/abc")
            second = await client.get("/v1/deals/abc")
        assert first.status_code == 200
        assert first.headers["X-Request-ID"]
        assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_metrics_use_route_pattern(self):
        counter = http_requests_total.labels(
            method="GET", endpoint="/v1/deals/{deal_id}", status_code="200"
        )
        before = counter._value.get()
        transport = ASGITransport(app=_middleware_app())
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            await client.get("/v1/deals/one")
            await client.get("/v1/deals/two")
        assert counter._value.get() == before + 2


# ── Sentry ───────────────────────────────────────────────────────────────────


class TestSentry:
    def test_init_sentry_tags_deal_id(self):
        with patch("src.app.core.monitoring.sentry_sdk.init") as mock_init:
            init_sentry(dsn="https://key@sentry.example/1", environment="production")

        kwargs = mock_init.call_args.kwargs
        assert kwargs["traces_sample_rate"] == 0.1
        before_send = kwargs["before_send"]

        event = before_send({"request": {"path_params": {"deal_id": "d-1"}}}, {})
        assert event["tags"]["deal_id"] == "d-1"
        assert "tags" not in before_send({"request": {}}, {})

    def test_full_sampling_outside_production(self):
        with patch("src.app.core.monitoring.sentry_sdk.init") as mock_init:
            init_sentry(dsn="https://key@sentry.example/1", environment="development")
        assert mock_init.call_args.kwargs["traces_sample_rate"] == 1.0


# ── Health ───────────────────────────────────────────────────────────────────


def _health_app() -> FastAPI:
    app = FastAPI()
    app.include_router(health.router)
    return app


class TestHealth:
    @pytest.mark.asyncio
    async def test_liveness(self):
        transport = ASGITransport(app=_health_app())
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_ready_with_memory_feed(self, engine):
        settings = Settings(EVENT_BACKEND=EventBackend.memory)
        with patch.object(health, "get_engine", return_value=engine), patch.object(
            health, "get_settings", return_value=settings
        ):
            transport = ASGITransport(app=_health_app())
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "ok", "redis": "unused"}

    @pytest.mark.asyncio
    async def test_degraded_when_database_down(self):
        settings = Settings(EVENT_BACKEND=EventBackend.memory)
        broken = MagicMock()
        broken.connect.side_effect = OSError("connection refused")
        with patch.object(health, "get_engine", return_value=broken), patch.object(
            health, "get_settings", return_value=settings
        ):
            transport = ASGITransport(app=_health_app())
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/health/ready")
        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "degraded"
        assert body["checks"]["database"] == "error"


# ── Settings ─────────────────────────────────────────────────────────────────


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.PLATFORM_FEE_PERCENT == 10
        assert settings.DEFAULT_INVOICE_DUE_DAYS == 7
        assert settings.JWT_ALGORITHM == "HS256"

    def test_deal_link(self):
        settings = Settings(APP_BASE_LINK="/studio")
        assert settings.deal_link("d-1") == "/studio?deal=d-1"
