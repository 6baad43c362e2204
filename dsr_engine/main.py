"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure structured logging
3. Initialize database engine and session factory (unless in-memory)
4. Build the service registry and register periodic tasks
5. Start the scheduler (if enabled)

Shutdown order:
1. Stop the scheduler, flush the audit ledger
2. Close DB connection pool
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dsr_engine.api.router import api_v1_router, public_router
from dsr_engine.config import Settings, get_settings
from dsr_engine.core.errors import ErrorKind, ServiceError
from dsr_engine.core.scheduler import AsyncioScheduler
from dsr_engine.database import close_db, init_db
from dsr_engine.services.registry import ServiceRegistry, build_registry
from dsr_engine.telemetry.logging import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings

    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )
    log.info(
        "app.starting",
        environment=settings.environment,
        store="memory" if settings.use_in_memory_store else "sql",
        db_url=settings.database_url.split("@")[-1],
    )

    owns_registry = getattr(app.state, "registry", None) is None
    if owns_registry:
        if not settings.use_in_memory_store:
            init_db(settings)
        app.state.registry = build_registry(settings)

    registry: ServiceRegistry = app.state.registry
    if settings.enable_scheduler and isinstance(registry.scheduler, AsyncioScheduler):
        await registry.scheduler.start()

    log.info("app.ready")
    yield

    await registry.close()
    if owns_registry and not settings.use_in_memory_store:
        await close_db()
    log.info("app.shutdown")


def create_app(settings: Settings | None = None, *, registry: ServiceRegistry | None = None) -> FastAPI:
    """Application factory.

    ``registry`` lets tests hand in a pre-built registry (in-memory stores,
    manual scheduler); otherwise the lifespan builds one.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="DSR Compliance Engine",
        description=(
            "GDPR data-subject-rights engine: request intake, identity verification, "
            "fulfilment, retention, secure deletion and a tamper-evident audit ledger."
        ),
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = registry

    # ------------------------------------------------------------------ #
    # Middleware (added in reverse order - last added = first executed)
    # ------------------------------------------------------------------ #

    cors_origins = ["*"] if settings.is_dev else settings.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.is_prod,
        allow_methods=["*"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )

    # Unique request ID for log correlation
    app.add_middleware(RequestIdMiddleware)

    # ------------------------------------------------------------------ #
    # Routers
    # ------------------------------------------------------------------ #
    app.include_router(public_router)
    app.include_router(api_v1_router)

    # ------------------------------------------------------------------ #
    # Global exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = ServiceError(
            kind=ErrorKind.VALIDATION_FAILED,
            message="Request body or parameters are invalid",
            details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
        )
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "code": "INTERNAL_ERROR", "message": "Internal server error"},
        )

    return app


# Module-level app instance for uvicorn
app = create_app()
