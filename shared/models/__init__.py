"""Shared Pydantic models and money helpers."""

from .common import (
    CENT,
    CURRENCY_PATTERN,
    RATE_PRECISION,
    HealthStatus,
    ReadinessReport,
    quantize_money,
    round_whole,
    to_decimal,
)

__all__ = [
    "CENT",
    "CURRENCY_PATTERN",
    "RATE_PRECISION",
    "HealthStatus",
    "ReadinessReport",
    "quantize_money",
    "round_whole",
    "to_decimal",
]
