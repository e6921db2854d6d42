"""Pydantic models and schemas."""

from cgm_link.models.glucose import (
    GlucoseReading,
    TrendDirection,
)
from cgm_link.models.settings import (
    AlertKind,
    AlertSettings,
    ConnectionState,
    RangeStatus,
)
from cgm_link.models.tokens import TokenRecord

__all__ = [
    # Glucose reading models
    "GlucoseReading",
    "TrendDirection",

    # Settings models
    "AlertKind",
    "AlertSettings",
    "ConnectionState",
    "RangeStatus",

    # Token models
    "TokenRecord",
]
