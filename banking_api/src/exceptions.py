"""
Domain exceptions.

Every service-level failure is a PayvostError carrying the HTTP status and
machine-readable error code the API returns for it. Exception handlers in
main.py turn them into {"detail", "error_code"} bodies.
"""

from typing import Any, Dict, List, Optional

from fastapi import status


class PayvostError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "error_code": self.error_code}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(PayvostError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"


class InvalidRequestError(PayvostError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "INVALID_REQUEST"


class InsufficientFundsError(InvalidRequestError):
    error_code = "INSUFFICIENT_FUNDS"


class CurrencyMismatchError(InvalidRequestError):
    error_code = "CURRENCY_MISMATCH"


class LimitExceededError(InvalidRequestError):
    error_code = "LIMIT_EXCEEDED"


class ConflictError(PayvostError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "CONFLICT"


class ComplianceRejectedError(PayvostError):
    """Raised when a compliance or fraud check blocks a transaction."""

    status_code = status.HTTP_403_FORBIDDEN
    error_code = "COMPLIANCE_REJECTED"

    def __init__(self, message: str, alerts: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, details={"alerts": alerts or []})
        self.alerts = alerts or []


class ExternalServiceError(PayvostError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "UPSTREAM_ERROR"


class FxServiceUnavailableError(ExternalServiceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "FX_UNAVAILABLE"


class FxConfigurationError(ExternalServiceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "FX_NOT_CONFIGURED"


class DatabaseUnavailableError(PayvostError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "DATABASE_UNAVAILABLE"
