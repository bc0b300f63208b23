"""
ASGI entrypoint module providing `app` at `app.main:app`.
Builds the service graph in the lifespan and exposes the HTTP API, health and metrics.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from app.core.config import get_settings
from app.core.logging import setup_logging
from app.core.metrics import PrometheusMiddleware
from app.database import AsyncSessionLocal, init_db, close_db
from app.api.v1.router import api_router
from app.exceptions import (
    BudgetExceededException,
    FlightTrackerException,
    ProviderAuthException,
    ProviderException,
    SelectionExpiredException,
    UsageLimitException,
)
from app.services.budget.usage_ledger import UsageLedger
from app.services.business.tracking_service import TrackingService
from app.services.cache.pending_selections import PendingSelectionStore
from app.services.cache.response_cache import ResponseCache
from app.services.external.aviationstack_client import AviationStackClient
from app.services.fallback.flightaware_client import FlightAwareProvider
from app.services.fallback.flightstats_client import FlightStatsProvider
from app.services.notifications.notification_service import NotificationService, create_notification_sink
from app.services.orchestration.cleanup_service import CleanupService
from app.services.orchestration.polling_service import PollingService
from app.services.orchestration.scheduler import FlightPollingScheduler
from app.services.reconciliation.reconciliation_engine import ReconciliationEngine

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting SkyAlert Backend...")

    # Create database tables if needed
    logger.info("Initializing database...")
    await init_db()

    session_factory = AsyncSessionLocal
    usage_ledger = UsageLedger(session_factory)
    cache = (
        ResponseCache(settings.RESPONSE_CACHE_MAX_ENTRIES, settings.RESPONSE_CACHE_TTL_SECONDS)
        if settings.ENABLE_RESPONSE_CACHE else None
    )
    primary = AviationStackClient(usage_ledger=usage_ledger, cache=cache)
    await primary.start()

    # Rank order matters: FlightStats first, FlightAware second
    fallbacks = [FlightStatsProvider(), FlightAwareProvider()]
    for provider in fallbacks:
        await provider.start()

    engine = ReconciliationEngine(session_factory, primary, usage_ledger, fallbacks)
    sink = create_notification_sink()
    notification_service = NotificationService(session_factory, sink)

    pending_store = PendingSelectionStore()
    await pending_store.connect()

    tracking_service = TrackingService(
        session_factory, primary, usage_ledger, engine, pending_store, notification_service
    )
    polling_service = PollingService(session_factory, engine, usage_ledger, notification_service)
    scheduler = FlightPollingScheduler(polling_service, CleanupService(session_factory))

    logger.info("Starting flight polling scheduler...")
    await scheduler.start()

    app.state.usage_ledger = usage_ledger
    app.state.tracking_service = tracking_service
    app.state.scheduler = scheduler

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await scheduler.stop()
    await pending_store.disconnect()
    await sink.close()
    for provider in fallbacks:
        await provider.close()
    await primary.close()
    await close_db()
    logger.info("Application shutdown complete")


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def register_exception_handlers(app: FastAPI):
    """Map domain exceptions onto HTTP responses"""

    @app.exception_handler(BudgetExceededException)
    async def budget_exceeded_handler(request: Request, exc: BudgetExceededException):
        return _error_response(429, exc)

    @app.exception_handler(UsageLimitException)
    async def usage_limit_handler(request: Request, exc: UsageLimitException):
        return _error_response(429, exc)

    @app.exception_handler(ProviderAuthException)
    async def provider_auth_handler(request: Request, exc: ProviderAuthException):
        logger.error(f"Provider credentials rejected: {str(exc)}")
        return _error_response(503, exc)

    @app.exception_handler(ProviderException)
    async def provider_handler(request: Request, exc: ProviderException):
        return _error_response(502, exc)

    @app.exception_handler(SelectionExpiredException)
    async def selection_expired_handler(request: Request, exc: SelectionExpiredException):
        return _error_response(410, exc)

    @app.exception_handler(FlightTrackerException)
    async def flight_tracker_handler(request: Request, exc: FlightTrackerException):
        logger.error(f"Unhandled flight tracker error: {str(exc)}", exc_info=True)
        return _error_response(500, exc)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error_response(400, exc)


def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Build the FastAPI application.
    Without the lifespan, callers are expected to populate app.state themselves.
    """
    app = FastAPI(
        title="SkyAlert Backend API",
        description="Flight tracking notifications with status reconciliation",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else None,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json"
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Prometheus metrics middleware
    if settings.ENABLE_METRICS:
        app.add_middleware(PrometheusMiddleware)

    register_exception_handlers(app)

    # Include API router
    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    # Prometheus metrics endpoint
    if settings.ENABLE_METRICS:
        app.mount("/metrics", make_asgi_app())

    @app.get("/")
    async def root():
        return {
            "name": "SkyAlert Backend API",
            "version": "1.0.0",
            "status": "running",
            "docs": "/docs"
        }

    @app.get("/health")
    async def health_check(request: Request):
        scheduler = getattr(request.app.state, "scheduler", None)
        return {
            "status": "healthy",
            "scheduler": scheduler.get_status()["running"] if scheduler else False,
            "polling_halted": scheduler.polling_service.halted if scheduler else False,
            "next_poll": scheduler.get_next_run_time() if scheduler else None
        }

    return app


app = create_app()
