"""Per-user target range and alert threshold settings."""

from enum import Enum

from pydantic import BaseModel, Field, model_validator


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class AlertKind(str, Enum):
    LOW = "low"
    HIGH = "high"


class RangeStatus(str, Enum):
    """Where a value sits relative to the target range."""

    BELOW = "below"
    IN_RANGE = "in_range"
    ABOVE = "above"


class AlertSettings(BaseModel):
    """
    Target range and alert thresholds in mg/dL.

    ``connection_state`` mirrors the pipeline for display only; the token
    store is the system of record for whether a user is connected.
    """

    target_low: int = Field(80, ge=1)
    target_high: int = Field(180, ge=1)
    alert_low: int = Field(70, ge=1)
    alert_high: int = Field(200, ge=1)
    connection_state: ConnectionState = ConnectionState.DISCONNECTED

    @model_validator(mode="after")
    def check_ranges(self) -> "AlertSettings":
        if self.target_low >= self.target_high:
            raise ValueError("target_low must be below target_high")
        if self.alert_low >= self.alert_high:
            raise ValueError("alert_low must be below alert_high")
        return self

    def merged(self, **changes) -> "AlertSettings":
        """Return a validated copy with *changes* applied."""
        unknown = set(changes) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        return type(self).model_validate({**self.model_dump(), **changes})
