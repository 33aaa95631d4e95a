"""Structured logging module using structlog."""

from .structured_logger import (
    REDACTED,
    LoggerMixin,
    bind_context,
    build_processors,
    configure_logging,
    get_logger,
    redact_secrets,
    unbind_context,
)

__all__ = [
    "REDACTED",
    "LoggerMixin",
    "bind_context",
    "build_processors",
    "configure_logging",
    "get_logger",
    "redact_secrets",
    "unbind_context",
]
