"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events that build the record store and the pipeline and billing
services, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.agency.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.agency.api.v1.router import router as v1_router
from src.agency.billing.alerts import StoreBillingAlertSink
from src.agency.billing.engine import MilestoneTriggerEngine
from src.agency.billing.packages import PackageService
from src.agency.billing.payments import PaymentsService
from src.agency.billing.work_units import WorkUnitService
from src.agency.config import get_settings
from src.agency.core.database import close_db, get_session, init_db
from src.agency.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.agency.core.redis import close_redis, get_redis_pool
from src.agency.pipeline.machine import OpportunityStageMachine
from src.agency.pipeline.repository import OpportunityRepository
from src.agency.services.customers import StoreCustomerEmitter
from src.agency.services.gsuite import GoogleContactsSync
from src.agency.store import ChangeFeed, PostgresRecordStore, RedisStreamPublisher


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Record Store ────────────────────────────────────────────────────
    publisher = None
    if settings.CHANGE_FEED_ENABLED:
        publisher = RedisStreamPublisher(get_redis_pool(), maxlen=settings.CHANGE_FEED_MAXLEN)
    feed = ChangeFeed(publisher=publisher)
    store = PostgresRecordStore(get_session, feed=feed)
    app.state.record_store = store

    # ── Opportunity Pipeline ────────────────────────────────────────────
    repository = OpportunityRepository(store, conflict_retries=settings.STORE_CONFLICT_RETRIES)
    stage_machine = OpportunityStageMachine(
        repository=repository,
        emitter=StoreCustomerEmitter(store),
        contact_sync=GoogleContactsSync(max_attempts=settings.CONTACT_SYNC_MAX_RETRIES),
        sync_timeout=settings.CONTACT_SYNC_TIMEOUT_SECONDS,
        conflict_retries=settings.STORE_CONFLICT_RETRIES,
    )
    app.state.stage_machine = stage_machine

    # ── Billing ─────────────────────────────────────────────────────────
    sink = StoreBillingAlertSink(store, conflict_retries=settings.STORE_CONFLICT_RETRIES)
    engine = MilestoneTriggerEngine(store, sink, conflict_retries=settings.STORE_CONFLICT_RETRIES)
    app.state.package_service = PackageService(store, sink)
    app.state.work_unit_service = WorkUnitService(
        store, engine, conflict_retries=settings.STORE_CONFLICT_RETRIES
    )
    app.state.payments_service = PaymentsService(sink)

    log.info(
        "app.started",
        environment=settings.ENVIRONMENT.value,
        change_feed=settings.CHANGE_FEED_ENABLED,
    )

    yield

    # Let in-flight contact syncs record their outcome before the pool closes
    await stage_machine.drain()
    await close_db()
    await close_redis()
    log.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Agency Console API",
        version="0.1.0",
        description="Lead pipeline, package milestones and payment tracking",
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

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
