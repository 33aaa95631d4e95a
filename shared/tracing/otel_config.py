"""OpenTelemetry configuration for distributed tracing.

Spans are exported over OTLP/HTTP to a collector.
"""

import functools
import inspect
from typing import Any, Callable, Optional, Sequence, TypeVar

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode

F = TypeVar("F", bound=Callable[..., Any])


def configure_tracing(
    service_name: str,
    otlp_endpoint: str = "http://otel-collector:4318/v1/traces",
    sampling_rate: float = 0.1,
    service_version: str = "1.0.0",
) -> TracerProvider:
    """Configure OpenTelemetry tracing for the service.

    Args:
        service_name: Name of the service (e.g., "payvost-api")
        otlp_endpoint: OTLP/HTTP traces endpoint of the collector
        sampling_rate: Sampling rate (0.0 to 1.0)
        service_version: Version stamped on the resource

    Returns:
        Configured TracerProvider
    """
    resource = Resource(
        attributes={
            "service.name": service_name,
            "service.namespace": "payvost",
            "service.version": service_version,
        }
    )

    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(sampling_rate)),
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))

    trace.set_tracer_provider(provider)

    return provider


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer instance.

    Args:
        name: Tracer name (typically __name__)

    Returns:
        Tracer instance
    """
    return trace.get_tracer(name)


def _record_arguments(span: trace.Span, signature: inspect.Signature, names: Sequence[str], args, kwargs) -> None:
    if not names:
        return
    bound = signature.bind_partial(*args, **kwargs)
    for name in names:
        value = bound.arguments.get(name)
        if value is not None:
            span.set_attribute(f"payvost.{name}", str(value))


def trace_function(span_name: Optional[str] = None, attributes: Sequence[str] = ()) -> Callable[[F], F]:
    """Decorator to trace a function in its own span.

    Works without a configured provider: spans are then no-ops.

    Args:
        span_name: Optional custom span name (defaults to the qualified name)
        attributes: Argument names recorded on the span as ``payvost.<name>``,
            e.g. ("currency",). Values are stringified; None is skipped.

    Returns:
        Decorated function with automatic tracing
    """

    def decorator(func: F) -> F:
        name = span_name or func.__qualname__
        signature = inspect.signature(func)

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            with get_tracer(func.__module__).start_as_current_span(name) as span:
                _record_arguments(span, signature, attributes, args, kwargs)
                try:
                    result = func(*args, **kwargs)
                except Exception as exc:
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                    raise
                span.set_status(Status(StatusCode.OK))
                return result

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            with get_tracer(func.__module__).start_as_current_span(name) as span:
                _record_arguments(span, signature, attributes, args, kwargs)
                try:
                    result = await func(*args, **kwargs)
                except Exception as exc:
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                    raise
                span.set_status(Status(StatusCode.OK))
                return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper  # type: ignore
        return sync_wrapper  # type: ignore

    return decorator


def shutdown_tracing() -> None:
    """Flush and shut down the global tracer provider, if it is an SDK provider."""
    provider = trace.get_tracer_provider()
    if isinstance(provider, TracerProvider):
        provider.shutdown()
