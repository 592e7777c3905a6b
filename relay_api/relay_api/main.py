"""FastAPI application entry-point for the posrelay service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from relay_api import __version__
from relay_api.config import APISettings, PlatformEnv, load_api_settings
from relay_api.dependencies import dispose_engine, get_session_factory, init_engine
from relay_api.middleware.logging import RequestLoggingMiddleware
from relay_api.routers import alerts, entitlements, events, health, oauth, webhooks
from relay_api.security import SessionError
from relay_api.services.entitlement_service import init_entitlement_gate
from relay_api.services.provider_client import close_provider_client, init_provider_client

logger = logging.getLogger(__name__)


def configure_structured_logging() -> None:
    """Replace the root handlers with a single JSON ``StreamHandler``."""
    from relay_api.middleware.json_formatter import JSONFormatter
    from relay_api.middleware.logging import CorrelationLoggingFilter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(CorrelationLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables if they do not exist (dev convenience; production
      uses Alembic migrations).
    - Initialise the entitlement gate and the provider HTTP client.

    On shutdown:
    - Wait for pending entitlement write-throughs.
    - Close the provider HTTP client.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    # Refuse to serve an unauthenticated event stream outside dev.
    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not (
        settings.session_secret.get_secret_value()
    ):
        raise RuntimeError(
            f"RELAY_SESSION_SECRET is required in {settings.platform_env.value} mode. Refusing to start."
        )
    if not settings.session_secret.get_secret_value():
        logger.warning("RELAY_SESSION_SECRET not set; session auth disabled (dev mode)")

    for name, secret in (
        ("RELAY_BILLING_WEBHOOK_SECRET", settings.billing_webhook_secret),
        ("RELAY_PAYMENT_WEBHOOK_SECRET", settings.payment_webhook_secret),
    ):
        if not secret.get_secret_value():
            logger.warning("%s not set; webhook signature validation is disabled", name)
    if not (settings.credential_encryption_key.get_secret_value() or settings.session_secret.get_secret_value()):
        logger.warning("No credential encryption key configured; provider tokens will be stored unencrypted")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or is_local:
        from relay_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    gate = init_entitlement_gate(get_session_factory(), enabled=settings.entitlement_enabled)
    init_provider_client(settings)

    yield

    # Shutdown.
    await gate.drain()
    await close_provider_client()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="posrelay API",
        description="Webhook ingestion, tenant entitlements and cache-invalidation relay.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "X-Tenant-ID",
            "Last-Event-ID",
            "Accept",
        ],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(events.router, prefix="/api/v1")
    app.include_router(entitlements.router, prefix="/api/v1")
    app.include_router(alerts.router, prefix="/api/v1")
    app.include_router(oauth.router, prefix="/api/v1")

    # Infrastructure endpoints, outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError) -> JSONResponse:
        logger.info("Rejected session on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn relay_api.main:app``.
app = create_app()
