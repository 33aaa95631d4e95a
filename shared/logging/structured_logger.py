"""Structured logging configuration using structlog.

Every entry carries the service name, environment and version, plus the
request's correlation id and the active trace id when there is one.
Credentials and tokens are redacted before rendering.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace
from structlog.types import EventDict, Processor

REDACTED = "[REDACTED]"

# Event keys whose values never reach the log output
SECRET_KEYS = frozenset({
    "password",
    "password_hash",
    "access_token",
    "authorization",
    "jwt_secret_key",
    "fixer_api_key",
    "access_key",
    "card_number",
})

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("uvicorn.access", "asyncpg", "aiohttp.access")

_app_context: Dict[str, str] = {"app": "payvost", "environment": "development"}


def add_app_context(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp the service identity set by configure_logging onto the entry."""
    for key, value in _app_context.items():
        event_dict.setdefault(key, value)
    return event_dict


def add_trace_context(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    span = trace.get_current_span()
    if span.is_recording():
        span_context = span.get_span_context()
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def redact_secrets(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace secret values, including inside one level of nested dicts.

    Args:
        logger: The logger instance
        method_name: The logging method name
        event_dict: The event dictionary

    Returns:
        The event dictionary with secret values replaced
    """
    for key, value in event_dict.items():
        if key.lower() in SECRET_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if str(k).lower() in SECRET_KEYS else v
                for k, v in value.items()
            }
    return event_dict


def build_processors(log_format: str = "json") -> list[Processor]:
    """Processor chain ending in a JSON or console renderer."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        add_app_context,
        add_trace_context,
        redact_secrets,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    return processors


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: Optional[str] = None,
    environment: str = "development",
    version: Optional[str] = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for production, "text" for a developer console
        service_name: Service name stamped on every entry
        environment: Deployment environment stamped on every entry
        version: Application version stamped on every entry
    """
    _app_context["environment"] = environment
    if service_name:
        _app_context["service"] = service_name
    if version:
        _app_context["version"] = version

    structlog.configure(
        processors=build_processors(log_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LoggerMixin:
    """Gives services a ``self.logger`` named after the concrete class."""

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        return get_logger(self.__class__.__name__)


def bind_context(**kwargs: Any) -> None:
    """Bind values to every entry logged from the current request."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
