"""
Request logging, metrics and request audit middleware.

Every request gets a correlation id (taken from X-Correlation-ID or
generated) bound to the structlog context and echoed in the response.
Mutating requests optionally leave an API_REQUEST audit row.
"""

import asyncio
import time
import uuid
from typing import Callable, Optional, Set

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from banking_api.src.config import get_settings
from banking_api.src.exceptions import DatabaseUnavailableError
from banking_api.src.models.audit import AuditAction, AuditLogCreate, AuditSeverity
from banking_api.src.services.audit_logger import AuditLogger
from shared.logging import LoggerMixin, bind_context, unbind_context
from shared.metrics import HttpMetrics

CORRELATION_HEADER = "X-Correlation-ID"


class RequestLoggingMiddleware(LoggerMixin, BaseHTTPMiddleware):
    """Middleware for request logging, metrics, and audit trails."""

    # Paths that are neither logged at info level nor audited
    EXEMPT_PATHS: Set[str] = {
        "/metrics",
        "/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
    }

    AUDIT_METHODS: Set[str] = {"POST", "PUT", "PATCH", "DELETE"}

    def __init__(
        self,
        app,
        http_metrics: Optional[HttpMetrics] = None,
        audit_logger_factory: Optional[Callable[[], AuditLogger]] = None
    ):
        """
        Initialize request logging middleware.

        Args:
            app: ASGI application
            http_metrics: HTTP metrics to update (optional)
            audit_logger_factory: Builds an AuditLogger for request audit rows (optional)
        """
        super().__init__(app)
        self.http_metrics = http_metrics
        self.audit_logger_factory = audit_logger_factory
        self.settings = get_settings()
        self._background_tasks: Set[asyncio.Task] = set()

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        bind_context(correlation_id=correlation_id)

        method = request.method
        path = request.url.path
        exempt = self._is_exempt_path(path)

        if self.http_metrics is not None:
            self.http_metrics.requests_in_progress.labels(method=method, endpoint=path).inc()

        start_time = time.perf_counter()
        if not exempt:
            self.logger.info("request_started", method=method, path=path, client_ip=self._client_ip(request))

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                "request_failed",
                method=method,
                path=path,
                error=str(e),
                duration=f"{time.perf_counter() - start_time:.3f}s",
                exc_info=True
            )
            raise
        finally:
            if self.http_metrics is not None:
                self.http_metrics.requests_in_progress.labels(method=method, endpoint=path).dec()
            unbind_context("correlation_id")

        duration = time.perf_counter() - start_time
        endpoint = self._route_template(request)

        if self.http_metrics is not None:
            self.http_metrics.requests_total.labels(
                method=method,
                endpoint=endpoint,
                status=response.status_code
            ).inc()
            self.http_metrics.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

        log_method = self.logger.debug if exempt else self.logger.info
        log_method(
            "request_completed",
            method=method,
            path=path,
            status_code=response.status_code,
            duration=f"{duration:.3f}s",
            correlation_id=correlation_id
        )

        response.headers[CORRELATION_HEADER] = correlation_id

        if not exempt and self._should_audit(request):
            self._schedule_audit(request, response.status_code, duration, correlation_id)

        return response

    def _is_exempt_path(self, path: str) -> bool:
        return any(path == exempt or path.startswith(exempt + "/") for exempt in self.EXEMPT_PATHS)

    def _should_audit(self, request: Request) -> bool:
        return (
            self.audit_logger_factory is not None
            and self.settings.audit_enabled
            and self.settings.audit_log_requests
            and request.method in self.AUDIT_METHODS
        )

    def _route_template(self, request: Request) -> str:
        """Matched route path (e.g. /api/v1/transfers/{transfer_id}) to keep label cardinality bounded."""
        route = request.scope.get("route")
        return getattr(route, "path", None) or "unmatched"

    def _client_ip(self, request: Request) -> Optional[str]:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        return request.client.host if request.client else None

    def _schedule_audit(self, request: Request, status_code: int, duration: float, correlation_id: str) -> None:
        try:
            audit_logger = self.audit_logger_factory()
        except DatabaseUnavailableError:
            self.logger.debug("request_audit_skipped", reason="database_unavailable")
            return

        user = getattr(request.state, "user", None)
        entry = AuditLogCreate(
            action=AuditAction.API_REQUEST,
            severity=AuditSeverity.LOW,
            user_id=user.id if user else None,
            user_name=user.username if user else None,
            user_type=user.user_type if user else None,
            resource_type="api",
            resource_id=self._route_template(request),
            description=f"{request.method} {request.url.path}",
            details={
                "method": request.method,
                "path": request.url.path,
                "duration_ms": int(duration * 1000),
                "correlation_id": correlation_id,
            },
            ip_address=self._client_ip(request),
            user_agent=request.headers.get("User-Agent"),
            status_code=status_code,
        )

        task = asyncio.create_task(audit_logger.log(entry))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
