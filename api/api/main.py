"""FastAPI application entry-point for the storefront control plane."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from store_engine.config import PlatformEnv
from store_engine.errors import (
    CredentialError,
    InsufficientCredits,
    JobAlreadyRunning,
    ProvisioningError,
    UnknownTenant,
)
from store_engine.state.sqlite_adapter import create_local_tables

from api import __version__
from api.config import APISettings, load_api_settings
from api.dependencies import (
    dispose_components,
    dispose_engine,
    get_connection_manager,
    get_engine_settings,
    get_scheduler,
    get_session_factory,
    init_components,
    init_engine,
)
from api.middleware.json_formatter import configure_json_logging
from api.middleware.logging import RequestLoggingMiddleware
from api.routers import billing, credits, health, storefront, stores

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the master database engine.
    - Create master tables in dev or local SQLite mode (production uses
      migrations).
    - Build the core components and start the idle-eviction sweep and,
      unless disabled, the billing poller.

    On shutdown:
    - Stop the background loops and close every tenant pool.
    - Dispose the master engine.
    """
    settings: APISettings = load_api_settings()
    engine_settings = get_engine_settings()

    if settings.structured_logging or engine_settings.structured_logging:
        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings, engine_settings)
    is_local = engine.url.get_backend_name() == "sqlite"
    logger.info("Master database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.create_tables or is_local or engine_settings.env == PlatformEnv.DEV:
        await create_local_tables(engine)
        logger.info("Master tables ensured")

    init_components(engine_settings, get_session_factory())
    await get_connection_manager().start()
    if settings.scheduler_enabled:
        await get_scheduler().start()
    else:
        logger.info("Billing poller disabled; daily deduction runs via the trigger endpoint only")

    yield

    await dispose_components()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Storefront Tenancy API",
        description="Tenant resolution, credit ledger and billing control plane.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Idempotency-Key",
            "X-Admin-Token",
            "X-Correlation-ID",
            "X-Store-Id",
            "Accept",
        ],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(stores.router, prefix="/api/v1")
    app.include_router(credits.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(storefront.router, prefix="/api/v1")

    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(UnknownTenant)
    async def unknown_tenant_handler(request: Request, exc: UnknownTenant) -> JSONResponse:
        logger.info("Unknown tenant on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=404, content={"detail": "Store not found"})

    @app.exception_handler(CredentialError)
    async def credential_error_handler(request: Request, exc: CredentialError) -> JSONResponse:
        logger.error("Credential error on %s for store=%s", request.url.path, exc.store_id)
        return JSONResponse(status_code=503, content={"detail": "Store database credential is invalid"})

    @app.exception_handler(ProvisioningError)
    async def provisioning_error_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
        logger.warning("Store database unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"detail": "Store database unavailable"},
            headers={"Retry-After": "30"},
        )

    @app.exception_handler(InsufficientCredits)
    async def insufficient_credits_handler(request: Request, exc: InsufficientCredits) -> JSONResponse:
        return JSONResponse(
            status_code=402,
            content={
                "detail": "Insufficient credits",
                "balance": exc.balance,
                "required": exc.required,
            },
        )

    @app.exception_handler(JobAlreadyRunning)
    async def job_running_handler(request: Request, exc: JobAlreadyRunning) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": f"Billing job {exc.kind} is already running"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
