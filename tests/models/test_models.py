"""Tests for the data models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import SecretStr, ValidationError

from cgm_link.models import (
    AlertSettings,
    ConnectionState,
    GlucoseReading,
    TokenRecord,
    TrendDirection,
)


class TestTokenRecord:
    def test_naive_timestamps_become_utc(self):
        record = TokenRecord(
            user_id="user123",
            access_token=SecretStr("a"),
            refresh_token=SecretStr("r"),
            expires_at=datetime(2024, 1, 1, 12, 0),
        )
        assert record.expires_at.tzinfo == timezone.utc

    def test_is_stale_uses_skew(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        record = TokenRecord(
            user_id="user123",
            access_token=SecretStr("a"),
            refresh_token=SecretStr("r"),
            expires_at=now + timedelta(minutes=4),
        )
        assert record.is_stale(timedelta(minutes=5), now=now)
        assert not record.is_stale(timedelta(minutes=3), now=now)
        assert not record.is_expired(now=now)
        assert record.is_expired(now=now + timedelta(minutes=5))

    def test_dynamodb_item_round_trip(self, make_token_record):
        record = make_token_record()
        item = record.to_dynamodb_item()

        assert item["access_token"] == "access-1"
        assert isinstance(item["expires_at"], str)
        restored = TokenRecord.from_dynamodb_item(item)
        assert restored.expires_at == record.expires_at
        assert restored.refresh_token.get_secret_value() == "refresh-1"

    def test_secrets_hidden_in_repr(self, make_token_record):
        assert "access-1" not in repr(make_token_record())


class TestGlucoseReading:
    def test_from_dexcom_egv(self):
        reading = GlucoseReading.from_dexcom_egv(
            {"systemTime": "2024-03-01T12:00:00", "value": 142, "trend": "fortyFiveDown"}
        )
        assert reading.value == 142
        assert reading.timestamp == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert reading.trend == TrendDirection.FALLING_SLIGHTLY

    def test_missing_value_is_skipped(self):
        assert GlucoseReading.from_dexcom_egv({"systemTime": "2024-03-01T12:00:00", "value": None}) is None

    @pytest.mark.parametrize("trend,expected", [
        ("doubleUp", TrendDirection.RISING_RAPIDLY),
        ("flat", TrendDirection.STEADY),
        ("doubleDown", TrendDirection.FALLING_RAPIDLY),
        ("notComputable", TrendDirection.UNKNOWN),
        (None, TrendDirection.UNKNOWN),
    ])
    def test_trend_mapping(self, trend, expected):
        assert TrendDirection.from_dexcom(trend) == expected

    def test_reading_is_immutable(self, sample_glucose_reading):
        with pytest.raises(ValidationError):
            sample_glucose_reading.value = 50


class TestAlertSettings:
    def test_defaults(self):
        settings = AlertSettings()
        assert (settings.target_low, settings.target_high) == (80, 180)
        assert (settings.alert_low, settings.alert_high) == (70, 200)
        assert settings.connection_state == ConnectionState.DISCONNECTED

    def test_merged_applies_partial_update(self):
        updated = AlertSettings().merged(alert_low=60)
        assert updated.alert_low == 60
        assert updated.alert_high == 200

    @pytest.mark.parametrize("changes", [
        {"alert_low": 0},
        {"target_low": 200},
        {"alert_high": 50},
    ])
    def test_merged_rejects_invalid_values(self, changes):
        with pytest.raises(ValueError):
            AlertSettings().merged(**changes)

    def test_merged_rejects_unknown_keys(self):
        with pytest.raises(ValueError, match="Unknown settings"):
            AlertSettings().merged(alarm=1)
