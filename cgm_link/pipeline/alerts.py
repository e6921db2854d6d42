"""Threshold alerts and target-range classification."""

from typing import NamedTuple, Optional

from cgm_link.models.glucose import GlucoseReading
from cgm_link.models.settings import AlertKind, AlertSettings, RangeStatus


class GlucoseAlert(NamedTuple):
    kind: AlertKind
    reading: GlucoseReading
    message: str


def evaluate(reading: GlucoseReading, settings: AlertSettings) -> Optional[AlertKind]:
    """Return the alert a reading triggers under *settings*, if any."""
    if reading.value < settings.alert_low:
        return AlertKind.LOW
    if reading.value > settings.alert_high:
        return AlertKind.HIGH
    return None


def classify_range(value: int, settings: AlertSettings) -> RangeStatus:
    """Place *value* relative to the target range."""
    if value < settings.target_low:
        return RangeStatus.BELOW
    if value > settings.target_high:
        return RangeStatus.ABOVE
    return RangeStatus.IN_RANGE


def alert_message(kind: AlertKind, reading: GlucoseReading) -> str:
    return f"Glucose is {kind.value}: {reading.value} mg/dL!"


def build_alert(reading: GlucoseReading, settings: AlertSettings) -> Optional[GlucoseAlert]:
    kind = evaluate(reading, settings)
    if kind is None:
        return None
    return GlucoseAlert(kind, reading, alert_message(kind, reading))
