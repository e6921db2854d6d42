"""Models for glucose readings."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TrendDirection(str, Enum):
    """Enum for blood glucose trend directions."""

    RISING_RAPIDLY = "rising_rapidly"
    RISING = "rising"
    RISING_SLIGHTLY = "rising_slightly"
    STEADY = "steady"
    FALLING_SLIGHTLY = "falling_slightly"
    FALLING = "falling"
    FALLING_RAPIDLY = "falling_rapidly"
    UNKNOWN = "unknown"

    @classmethod
    def from_dexcom(cls, trend: Optional[str]) -> "TrendDirection":
        """Map a Dexcom v3 EGV ``trend`` string onto a direction."""
        return _DEXCOM_TRENDS.get((trend or "").lower(), cls.UNKNOWN)


_DEXCOM_TRENDS = {
    "doubleup": TrendDirection.RISING_RAPIDLY,
    "singleup": TrendDirection.RISING,
    "fortyfiveup": TrendDirection.RISING_SLIGHTLY,
    "flat": TrendDirection.STEADY,
    "fortyfivedown": TrendDirection.FALLING_SLIGHTLY,
    "singledown": TrendDirection.FALLING,
    "doubledown": TrendDirection.FALLING_RAPIDLY,
}


class GlucoseReading(BaseModel):
    """A single estimated glucose value. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Instant of the reading in UTC")
    value: int = Field(..., description="Glucose value in mg/dL")
    trend: TrendDirection = Field(TrendDirection.UNKNOWN, description="Direction of glucose trend")

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        """Dexcom system times are UTC without an offset."""
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @classmethod
    def from_dexcom_egv(cls, record: dict) -> Optional["GlucoseReading"]:
        """
        Build a reading from one entry of the ``/v3/users/self/egvs`` ``records`` list.

        Returns None for records without a value (sensor warm-up, calibration gaps).

        Raises:
            KeyError, ValueError, TypeError: If the record does not match the EGV schema
        """
        value = record["value"]
        if value is None:
            return None
        return cls(
            timestamp=datetime.fromisoformat(record["systemTime"].replace("Z", "+00:00")),
            value=int(value),
            trend=TrendDirection.from_dexcom(record.get("trend")),
        )
