"""Metrics module using Prometheus."""

from .prometheus_metrics import (
    HttpMetrics,
    PaymentMetrics,
    setup_metrics,
    get_http_metrics,
    get_payment_metrics,
    get_metrics_handler,
)

__all__ = [
    "HttpMetrics",
    "PaymentMetrics",
    "setup_metrics",
    "get_http_metrics",
    "get_payment_metrics",
    "get_metrics_handler",
]
