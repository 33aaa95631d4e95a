"""Common Pydantic models and money helpers shared across services."""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Dict, Union

from pydantic import BaseModel, ConfigDict, Field

CENT = Decimal("0.01")
RATE_PRECISION = Decimal("0.000001")

CURRENCY_PATTERN = r"^[A-Z]{3}$"

Numeric = Union[Decimal, int, float, str]


class HealthStatus(str, Enum):
    """Health status enum."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


class ReadinessReport(BaseModel):
    """Readiness check payload."""

    model_config = ConfigDict(frozen=True)

    status: str = Field(..., description="ready or not_ready")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    checks: Dict[str, HealthStatus] = Field(default_factory=dict, description="Per-component health")


def to_decimal(value: Numeric) -> Decimal:
    """Convert a numeric value to Decimal without float artifacts.

    Floats go through their shortest repr so 0.1 becomes Decimal("0.1").

    Raises:
        ValueError: If the value is not numeric
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not a numeric amount: {value!r}") from e


def quantize_money(value: Numeric, exponent: Decimal = CENT) -> Decimal:
    """Round a money amount half-up to the given exponent (cents by default)."""
    return to_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


def round_whole(value: Numeric) -> int:
    """Round to whole currency units, half-up."""
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
