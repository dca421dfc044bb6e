"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
the DealError handler, lifespan wiring for the database, change feed and
DealLifecycleManager, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.deals import deal_error_handler
from src.app.api.v1.router import router as v1_router
from src.app.config import EventBackend, Settings, get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import (
    MetricsMiddleware,
    get_metrics_response,
    init_sentry,
    record_delivery_failure,
)
from src.app.core.redis import close_redis, get_redis_pool
from src.app.deals.errors import DealError
from src.app.deals.lifecycle import DealLifecycleManager
from src.app.deals.repository import DealRepository
from src.app.events.bus import DealEventBus, InMemoryEventBus, RedisStreamEventBus
from src.app.events.dispatcher import NotificationDispatcher


def build_event_bus(settings: Settings) -> DealEventBus:
    """Select the change-feed transport from settings."""
    if settings.EVENT_BACKEND == EventBackend.redis:
        return RedisStreamEventBus(get_redis_pool(), stream=settings.EVENT_STREAM)
    return InMemoryEventBus()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wire the deal core on startup, drain and close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    event_bus = build_event_bus(settings)
    dispatcher = NotificationDispatcher(
        event_bus,
        link_builder=settings.deal_link,
        max_attempts=settings.NOTIFICATION_MAX_ATTEMPTS,
        on_failure=record_delivery_failure,
    )
    repository = DealRepository(get_session)
    app.state.event_bus = event_bus
    app.state.deal_dispatcher = dispatcher
    app.state.deal_manager = DealLifecycleManager(
        repository,
        dispatcher=dispatcher,
        fee_percent=settings.PLATFORM_FEE_PERCENT,
        invoice_due_days=settings.DEFAULT_INVOICE_DUE_DAYS,
    )
    log.info(
        "deal_core_initialized",
        event_backend=settings.EVENT_BACKEND.value,
        fee_percent=settings.PLATFORM_FEE_PERCENT,
    )

    yield

    # Let in-flight notifications finish before the connections go away.
    await dispatcher.drain()
    app.state.deal_manager = None
    await close_db()
    await close_redis()
    log.info("deal_core_shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Deal Core API",
        version="0.1.0",
        description="Advertiser/creator deal negotiation, escrow and audit",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(DealError, deal_error_handler)

    # Include v1 API router (health, deals)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
