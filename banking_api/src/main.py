"""
FastAPI application entry point for the Payvost banking API.

This module provides the main FastAPI application with:
- Health, readiness and Prometheus metrics endpoints
- Routers for auth, admin, dashboard, transfers, fees, FX and compliance
- Request logging, request audit rows and security headers
- Rate limiting and OpenTelemetry tracing
- Database pool and FX client lifecycle
- Uniform {"detail", "error_code"} error bodies
"""

import asyncio
import asyncpg
import structlog
import uvicorn
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CONTENT_TYPE_LATEST
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from banking_api.src.config import Settings, get_settings
from banking_api.src.database import (
    check_database,
    close_db_pool,
    current_pool,
    get_db_pool,
    init_db_pool,
    init_schema,
)
from banking_api.src.dependencies import close_fx_service, get_metrics, init_fx_service, limiter
from banking_api.src.exceptions import PayvostError
from banking_api.src.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from banking_api.src.repositories.audit_repo import AuditRepository
from banking_api.src.routers import admin, auth, compliance, dashboard, fees, fx, transfers
from banking_api.src.services.audit_logger import AuditLogger
from shared.logging import configure_logging
from shared.metrics import get_http_metrics, get_metrics_handler
from shared.models import HealthStatus, ReadinessReport
from shared.tracing import configure_tracing, shutdown_tracing

logger = structlog.get_logger(__name__)

settings: Settings = get_settings()

# Errors that mean the database cannot be reached, as opposed to a bad query
DATABASE_UNAVAILABLE_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
    OSError,
    asyncio.TimeoutError,
)


def request_audit_logger() -> AuditLogger:
    """AuditLogger for the request-audit middleware; raises DatabaseUnavailableError without a pool."""
    return AuditLogger(AuditRepository(get_db_pool()), get_metrics())


# ============================================================================
# Lifespan Management
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager for startup and shutdown events.

    The API starts even when PostgreSQL is unreachable: database-backed
    routes then answer 503 and /ready reports not_ready.
    """
    configure_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        service_name=settings.app_name,
        environment=settings.environment,
        version=settings.app_version,
    )
    logger.info(
        "application_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.environment
    )

    if settings.tracing_enabled:
        configure_tracing(
            service_name=settings.app_name,
            otlp_endpoint=settings.tracing_otlp_endpoint,
            sampling_rate=settings.tracing_sample_rate,
            service_version=settings.app_version,
        )

    try:
        pool = await init_db_pool(settings)
        if settings.database_auto_create_schema:
            await init_schema(pool)
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        logger.error("database_unavailable_at_startup", error=str(e))

    init_fx_service(settings)

    logger.info("application_started", app_name=settings.app_name, version=settings.app_version)

    try:
        yield
    finally:
        logger.info("application_shutting_down")
        await close_fx_service()
        await close_db_pool()
        if settings.tracing_enabled:
            shutdown_tracing()
        logger.info("application_shutdown_complete")


# ============================================================================
# FastAPI Application
# ============================================================================

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Back-office and customer API for a cross-border payments platform: "
        "transfers, fees, FX quotes, compliance screening, KYC and the audit trail."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)

app.state.limiter = limiter

# ============================================================================
# Middleware Configuration
# ============================================================================

if settings.cors_enabled:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    RequestLoggingMiddleware,
    http_metrics=get_http_metrics() if settings.metrics_enabled else None,
    audit_logger_factory=request_audit_logger,
)

if settings.security_headers_enabled:
    app.add_middleware(SecurityHeadersMiddleware)

if settings.tracing_enabled:
    FastAPIInstrumentor.instrument_app(app)

# ============================================================================
# Exception Handlers
# ============================================================================


@app.exception_handler(PayvostError)
async def payvost_exception_handler(request: Request, exc: PayvostError):
    """Render domain errors with their status and error code."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_rejected",
        path=request.url.path,
        status_code=exc.status_code,
        error_code=exc.error_code,
        detail=exc.message
    )
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def database_unavailable_handler(request: Request, exc: Exception):
    logger.error("database_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Database is not available", "error_code": "DATABASE_UNAVAILABLE"}
    )


for _error in DATABASE_UNAVAILABLE_ERRORS:
    app.add_exception_handler(_error, database_unavailable_handler)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    logger.warning(
        "validation_error",
        path=request.url.path,
        errors=exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_encoder(exc.errors()), "error_code": "VALIDATION_ERROR"}
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    logger.warning(
        "http_exception",
        path=request.url.path,
        status_code=exc.status_code,
        detail=exc.detail
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": f"HTTP_{exc.status_code}"},
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error(
        "unexpected_exception",
        path=request.url.path,
        error=str(exc),
        exc_info=True
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"}
    )


app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ============================================================================
# Health and Readiness Endpoints
# ============================================================================


@app.get("/health", tags=["Health"], response_class=JSONResponse)
async def health_check() -> Dict[str, Any]:
    """
    Liveness check.

    Does not touch the database; use /ready for dependency checks.
    """
    return {
        "status": HealthStatus.HEALTHY.value,
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment
    }


@app.get("/ready", tags=["Health"], response_class=JSONResponse)
async def readiness_check():
    """
    Readiness check.

    Returns 503 with status not_ready while the database is unreachable.
    """
    pool = current_pool()
    database_ok = await check_database(pool)
    if settings.metrics_enabled:
        get_http_metrics().observe_pool(pool)

    report = ReadinessReport(
        status="ready" if database_ok else "not_ready",
        service=settings.app_name,
        version=settings.app_version,
        checks={"database": HealthStatus.HEALTHY if database_ok else HealthStatus.UNHEALTHY},
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=report.model_dump(mode="json")
    )


# ============================================================================
# Metrics Endpoint
# ============================================================================

_metrics_handler = get_metrics_handler()


@app.get("/metrics", tags=["Monitoring"], response_class=PlainTextResponse)
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    if settings.metrics_enabled:
        get_http_metrics().observe_pool(current_pool())
    return Response(content=_metrics_handler(), media_type=CONTENT_TYPE_LATEST)


# ============================================================================
# API Router Registration
# ============================================================================

for _router in (auth.router, admin.router, dashboard.router, transfers.router, fees.router, fx.router, compliance.router):
    app.include_router(_router, prefix=settings.api_prefix)


# ============================================================================
# Application Entry Point
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "banking_api.src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
