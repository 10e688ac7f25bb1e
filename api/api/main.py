"""FastAPI application entry-point for the TravelPoint API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from travelpoint_core.errors import ServiceError
from travelpoint_core.state.database import create_tables

from api import __version__
from api.config import APISettings
from api.dependencies import dispose_engine, get_settings, init_engine
from api.logging_config import configure_logging, reset_logging
from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.routers import admin, billing, bookings, groups, health, team

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Install the log handler (JSON when structured logging is on).
    - Initialise the async database engine.
    - Create missing tables when ``auto_create_tables`` is set.

    On shutdown:
    - Dispose the database engine connection pool.
    - Remove the log handler.
    """
    settings: APISettings = get_settings()
    configure_logging(structured=settings.structured_logging, level=settings.log_level)

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.auto_create_tables:
        await create_tables(engine)

    if settings.billing_enabled:
        logger.info("Stripe billing enabled")
    else:
        logger.warning("Stripe billing disabled; checkout, portal and webhooks are inert")

    yield

    await dispose_engine()
    logger.info("Application shutdown complete")
    reset_logging()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="TravelPoint API",
        description="Cruise group payments: bookings, cabin ledgers, team and subscription billing.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost last) -----------------------------------------

    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
    )

    # -- Routers -------------------------------------------------------------

    # Versioned API routes; all business endpoints live under /api/v1.
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(groups.router, prefix="/api/v1")
    app.include_router(bookings.router, prefix="/api/v1")
    app.include_router(team.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    # Infrastructure endpoints outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        # Log the full error for debugging; return only the public message.
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.public_message, "code": exc.code},
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
