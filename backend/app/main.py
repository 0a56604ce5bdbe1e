"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Dispatch engine ──
from backend.app.notifications.notification_service import (
    NotificationService,
    build_notification_service,
)

# ── API routers ──
from backend.app.api.v1.notifications import router as notification_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(service: Optional[NotificationService] = None) -> FastAPI:
    """
    Build the application around one NotificationService.

    ``service`` defaults to one built from settings; tests pass their own.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage startup and shutdown events."""
        logger.info(
            "Starting %s v%s [%s] transports=%s",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
            settings.NOTIFY_TRANSPORT_MODE,
        )
        yield
        await app.state.notification_service.close()
        logger.info("Shutting down %s", settings.APP_NAME)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Multi-channel notification dispatch. "
            "Renders templates, routes notifications to email, SMS, webhook, "
            "push and in-app channels, sends in bulk with per-item results, "
            "and keeps a queryable delivery ledger with statistics."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.notification_service = (
        service if service is not None else build_notification_service(settings)
    )

    # ── Middleware stack (order matters — outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(notification_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "transport_mode": settings.NOTIFY_TRANSPORT_MODE,
            "channel_types": ["email", "sms", "webhook", "push", "in_app"],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(app.state.notification_service)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(app.state.notification_service)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
