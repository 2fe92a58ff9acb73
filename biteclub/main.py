"""
FastAPI Application Entry Point

Bite Club Ordering Backend - students order with prepaid credits,
restaurants confirm by phone keypad or dashboard.
Supports both Mock services (development) and Real APIs (production).

Endpoints:
    - /api/orders: Checkout, promotions preview, accept/reject/close out
    - /api/credits: Balance, credit purchases, payment webhook
    - /api/calls: IVR webhooks, call settings, history, retry
    - /api/integrations: POS configuration and sync
    - /api/admin: Refunds and manual credit grants
    - GET /health: System health check

Version: 1.0.0
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from biteclub.core.config import Settings, get_settings, setup_logging
from biteclub.core.exceptions import BiteClubError
from biteclub.database import Database
from biteclub.routes import routers
from biteclub.schemas import HealthResponse
from biteclub.services import ServiceContainer

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Build the application.

    Without ``services`` the lifespan opens the database and wires the
    services from ``settings``; tests pass a ready container instead.
    """
    settings = settings or get_settings()

    # =========================================================================
    # APPLICATION LIFECYCLE
    # =========================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manage application startup and shutdown events.
        """
        logger.info("=" * 60)
        logger.info(f"🚀 Starting {settings.app_name}")
        logger.info(f"   Version: {settings.app_version}")
        logger.info(f"   Environment: {settings.env_mode.value}")
        logger.info(f"   Debug: {settings.debug}")
        logger.info("=" * 60)

        owned = app.state.services is None
        if owned:
            database = Database(settings.database_url, echo=settings.database_echo)
            await database.create_all()
            logger.info("✅ Database initialized")
            app.state.services = ServiceContainer.build(database, settings)

        container: ServiceContainer = app.state.services
        logger.info(f"✅ Payment Service: {container.payment.provider_name}")
        logger.info(f"✅ Telephony Service: {container.telephony.provider_name}")

        if settings.use_real_services:
            missing = settings.validate_production_config()
            if missing:
                logger.warning(f"⚠️ Missing production config: {missing}")

        logger.info("=" * 60)
        logger.info("✅ Application ready!")
        logger.info("=" * 60)

        yield  # Application runs

        logger.info("Shutting down...")
        if owned:
            await container.database.dispose()
        logger.info("✅ Cleanup complete")

    # =========================================================================
    # APPLICATION INSTANCE
    # =========================================================================

    app = FastAPI(
        title=settings.app_name,
        description=(
            "Credit-based campus food ordering with restaurant promotions "
            "and IVR order confirmation."
        ),
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url] if settings.use_real_services else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for router in routers:
        app.include_router(router)

    # =========================================================================
    # ROOT & HEALTH ENDPOINTS
    # =========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """API root with navigation links."""
        return {
            "message": f"🍔 Welcome to {settings.app_name}",
            "version": settings.app_version,
            "environment": settings.env_mode.value,
            "documentation": "/docs",
            "health": "/health",
        }

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="System Health Check",
    )
    async def health_check(request: Request) -> HealthResponse:
        """Verify all system components are operational."""
        report = await request.app.state.services.health()
        return HealthResponse(
            status=report["status"],
            version=settings.app_version,
            environment=settings.env_mode.value,
            database=report["database"],
            payment=report["payment"],
            telephony=report["telephony"],
            timestamp=datetime.now(timezone.utc),
        )

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(BiteClubError)
    async def domain_exception_handler(request: Request, exc: BiteClubError) -> JSONResponse:
        """Domain errors carry their own status code."""
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all exception handler."""
        logger.exception(f"Unhandled exception: {exc}")

        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal Server Error",
                "detail": str(exc) if settings.debug else "An unexpected error occurred",
            },
        )

    return app


setup_logging()
app = create_app()


# =============================================================================
# DEVELOPMENT SERVER
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "biteclub.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )
