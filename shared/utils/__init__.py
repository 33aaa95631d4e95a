"""Shared utilities."""

from .retry import (
    ErrorCategory,
    RetryConfig,
    RetryMetrics,
    calculate_delay,
    classify_error,
    retry_after_seconds,
    retry_with_backoff,
)

__all__ = [
    "ErrorCategory",
    "RetryConfig",
    "RetryMetrics",
    "calculate_delay",
    "classify_error",
    "retry_after_seconds",
    "retry_with_backoff",
]
