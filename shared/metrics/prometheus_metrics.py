"""Prometheus metrics definitions and helpers.

Provides metric definitions for the payments API: HTTP traffic, transfers,
fees, FX provider calls and compliance alerts.
"""

from functools import lru_cache
from typing import Callable

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY,
    CollectorRegistry,
)


class HttpMetrics:
    """HTTP server metrics."""

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        """Initialize HTTP metrics.

        Args:
            registry: Prometheus registry to use
        """
        self.requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status"],
            registry=registry,
        )

        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=registry,
        )

        self.requests_in_progress = Gauge(
            "http_requests_in_progress",
            "HTTP requests currently in progress",
            ["method", "endpoint"],
            registry=registry,
        )

        self.db_connections_active = Gauge(
            "database_connections_active",
            "Active database connections",
            registry=registry,
        )

        self.db_connections_idle = Gauge(
            "database_connections_idle",
            "Idle database connections in pool",
            registry=registry,
        )

    def observe_pool(self, pool) -> None:
        """Refresh pool gauges from an asyncpg pool."""
        if pool is None:
            return
        self.db_connections_active.set(pool.get_size())
        self.db_connections_idle.set(pool.get_idle_size())


class PaymentMetrics:
    """Payment domain metrics."""

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        """Initialize payment metrics.

        Args:
            registry: Prometheus registry to use
        """
        # Transfers by outcome
        self.transfers = Counter(
            "payvost_transfers_total",
            "Total number of transfers processed",
            ["status"],
            registry=registry,
        )

        # Transfer size
        self.transfer_amount = Histogram(
            "payvost_transfer_amount",
            "Transfer amounts in major currency units",
            ["currency"],
            buckets=[1, 10, 50, 100, 500, 1000, 5000, 10000, 50000, 100000],
            registry=registry,
        )

        self.fees_collected = Counter(
            "payvost_fees_collected_total",
            "Fees collected in major currency units",
            ["currency", "transaction_type"],
            registry=registry,
        )

        self.fx_requests = Counter(
            "payvost_fx_requests_total",
            "Requests made to the FX rate provider",
            ["endpoint", "outcome"],
            registry=registry,
        )

        self.fx_request_duration = Histogram(
            "payvost_fx_request_duration_seconds",
            "Latency of FX rate provider requests",
            ["endpoint"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
            registry=registry,
        )

        self.compliance_alerts = Counter(
            "payvost_compliance_alerts_total",
            "Compliance alerts raised",
            ["alert_type", "severity"],
            registry=registry,
        )

        self.audit_write_failures = Counter(
            "payvost_audit_write_failures_total",
            "Audit log writes that failed and were dropped",
            registry=registry,
        )


@lru_cache()
def setup_metrics() -> tuple[HttpMetrics, PaymentMetrics]:
    """Create the process-wide metric instances on the default registry.

    Returns:
        Tuple of (HttpMetrics, PaymentMetrics)
    """
    return HttpMetrics(), PaymentMetrics()


def get_payment_metrics() -> PaymentMetrics:
    """Process-wide payment metrics."""
    return setup_metrics()[1]


def get_http_metrics() -> HttpMetrics:
    """Process-wide HTTP metrics."""
    return setup_metrics()[0]


def get_metrics_handler(registry: CollectorRegistry = REGISTRY) -> Callable[[], bytes]:
    """Get metrics handler for HTTP endpoint.

    Returns:
        Function that generates Prometheus metrics output
    """

    def metrics_handler() -> bytes:
        return generate_latest(registry)

    return metrics_handler
