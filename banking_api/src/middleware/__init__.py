"""HTTP middleware: request logging/metrics/audit and security headers."""

from banking_api.src.middleware.request_logging import RequestLoggingMiddleware
from banking_api.src.middleware.security_headers import SecurityHeadersMiddleware

__all__ = ["RequestLoggingMiddleware", "SecurityHeadersMiddleware"]
