"""
Retry utilities with exponential backoff.

Classifies failures of outbound HTTP calls as transient or permanent and
retries the transient ones with jittered exponential backoff.
"""

import asyncio
import functools
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Tuple, Type

import aiohttp
import structlog


logger = structlog.get_logger(__name__)


class ErrorCategory(Enum):
    """Error category classification"""
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    RATE_LIMITED = "rate_limited"


@dataclass
class RetryConfig:
    """Backoff settings; delays are in seconds."""
    max_attempts: int = 3
    initial_delay: float = 0.2
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.2  # +/- 20%


@dataclass
class RetryMetrics:
    """Counters for one decorated operation, shared across calls."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retry_count: int = 0
    total_retry_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_timestamp: Optional[datetime] = None


RETRYABLE_STATUS_CODES = {408, 500, 502, 503, 504}

RETRYABLE_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    aiohttp.ClientConnectionError,
    aiohttp.ServerTimeoutError,
    aiohttp.ClientPayloadError,
)

NON_RETRYABLE_EXCEPTIONS = (
    ValueError,
    TypeError,
    KeyError,
    AttributeError,
)


def classify_error(exception: Exception) -> ErrorCategory:
    """
    Classify an exception as retryable or non-retryable.

    Args:
        exception: The exception to classify

    Returns:
        ErrorCategory indicating retry behavior
    """
    status_code = getattr(exception, "status", None)
    if isinstance(status_code, int):
        if status_code == 429:
            return ErrorCategory.RATE_LIMITED
        if status_code in RETRYABLE_STATUS_CODES:
            return ErrorCategory.RETRYABLE
        if 400 <= status_code < 500:
            return ErrorCategory.NON_RETRYABLE

    if isinstance(exception, RETRYABLE_EXCEPTIONS):
        return ErrorCategory.RETRYABLE

    if isinstance(exception, NON_RETRYABLE_EXCEPTIONS):
        return ErrorCategory.NON_RETRYABLE

    error_msg = str(exception).lower()
    retryable_patterns = [
        "connection",
        "timeout",
        "unavailable",
        "temporary",
    ]

    if any(pattern in error_msg for pattern in retryable_patterns):
        return ErrorCategory.RETRYABLE

    return ErrorCategory.NON_RETRYABLE


def retry_after_seconds(exception: Exception) -> Optional[float]:
    """Seconds requested by a Retry-After header on an HTTP error, if any."""
    headers = getattr(exception, "headers", None)
    if not headers:
        return None
    value = headers.get("Retry-After")
    try:
        return max(0.0, float(value)) if value is not None else None
    except ValueError:
        return None


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay for retry attempt with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.initial_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter = random.uniform(-config.jitter_range, config.jitter_range)
        delay = delay * (1 + jitter)

    return max(0.0, delay)


def retry_with_backoff(
    config: Optional[RetryConfig] = None,
    retryable_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    metrics: Optional[RetryMetrics] = None,
):
    """
    Decorator for retrying coroutines with exponential backoff.

    Rate-limited errors are retried like transient ones, waiting at least as
    long as the provider's Retry-After header asks, capped at max_delay.

    Args:
        config: Retry configuration (uses defaults if None)
        retryable_exceptions: Extra exception types that are always retried
        on_retry: Optional callback called on each retry
        metrics: Optional metrics object to track retry stats

    Returns:
        Decorated coroutine function with retry logic

    Example:
        @retry_with_backoff(RetryConfig(max_attempts=5))
        async def fetch_rates(session):
            ...
    """
    if config is None:
        config = RetryConfig()

    if metrics is None:
        metrics = RetryMetrics()

    always_retry = retryable_exceptions or ()

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(config.max_attempts):
                started = time.monotonic()
                try:
                    metrics.total_attempts += 1
                    result = await func(*args, **kwargs)
                    metrics.successful_attempts += 1
                    return result

                except Exception as e:
                    category = (
                        ErrorCategory.RETRYABLE
                        if always_retry and isinstance(e, always_retry)
                        else classify_error(e)
                    )
                    metrics.last_error = str(e)
                    metrics.last_error_timestamp = datetime.now(timezone.utc)

                    if category == ErrorCategory.NON_RETRYABLE:
                        metrics.failed_attempts += 1
                        logger.error(
                            "retry_non_retryable_error",
                            function=func.__name__,
                            attempt=attempt + 1,
                            error_type=type(e).__name__,
                            error=str(e),
                        )
                        raise

                    if attempt == config.max_attempts - 1:
                        metrics.failed_attempts += 1
                        logger.error(
                            "retry_exhausted",
                            function=func.__name__,
                            max_attempts=config.max_attempts,
                            total_retry_duration_ms=metrics.total_retry_duration_ms,
                            error_type=type(e).__name__,
                            error=str(e),
                        )
                        raise

                    delay = calculate_delay(attempt, config)
                    if category == ErrorCategory.RATE_LIMITED:
                        requested = retry_after_seconds(e)
                        if requested is not None:
                            delay = min(max(delay, requested), config.max_delay)
                    metrics.retry_count += 1
                    metrics.total_retry_duration_ms += delay * 1000

                    logger.warning(
                        "retry_scheduled",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_attempts=config.max_attempts,
                        delay_seconds=round(delay, 3),
                        elapsed_ms=round((time.monotonic() - started) * 1000, 1),
                        error_type=type(e).__name__,
                        error_category=category.value,
                    )

                    if on_retry:
                        on_retry(attempt, e, delay)

                    await asyncio.sleep(delay)

        return wrapper

    return decorator
