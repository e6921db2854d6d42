"""Tests for the glucose data sources."""

import random
from datetime import datetime, timezone

import pytest

from cgm_link.pipeline.sources import DexcomGlucoseSource, SimulatedGlucoseSource, make_source
from cgm_link.utils.config import get_settings
from cgm_link.utils.error_handling import ProviderUnavailableError, RefreshInvalidError


@pytest.fixture
def connected(token_repo, make_token_record, fake_dexcom):
    """User with a live ``access-1``/``refresh-1`` pair known to the fake provider."""
    token_repo.create(make_token_record())
    fake_dexcom.issued = 1
    fake_dexcom.valid_access_tokens = {"access-1"}
    fake_dexcom.add_recent_readings(110, 115, 120)


class TestDexcomGlucoseSource:
    @pytest.mark.asyncio
    async def test_fetch_with_fresh_token(self, connected, dexcom_source, fake_dexcom):
        readings = await dexcom_source.fetch("user123")

        assert [r.value for r in readings] == [110, 115, 120]
        assert fake_dexcom.token_requests == []

    @pytest.mark.asyncio
    async def test_stale_token_is_refreshed_before_fetch(self, token_repo, make_token_record, dexcom_source, fake_dexcom):
        token_repo.create(make_token_record(expires_in=60))
        fake_dexcom.issued = 1
        fake_dexcom.add_recent_readings(100)

        readings = await dexcom_source.fetch("user123")

        assert [r.value for r in readings] == [100]
        assert fake_dexcom.token_requests[0]["refresh_token"] == "refresh-1"
        assert fake_dexcom.egv_requests[0].headers["Authorization"] == "Bearer access-2"

    @pytest.mark.asyncio
    async def test_rejected_token_is_refreshed_and_retried_once(self, connected, dexcom_source, fake_dexcom, token_repo):
        fake_dexcom.valid_access_tokens = set()

        readings = await dexcom_source.fetch("user123")

        assert len(readings) == 3
        assert len(fake_dexcom.token_requests) == 1
        assert len(fake_dexcom.egv_requests) == 2
        assert token_repo.get("user123").access_token.get_secret_value() == "access-2"

    @pytest.mark.asyncio
    async def test_second_rejection_requires_reauthorization(self, connected, dexcom_source, fake_dexcom, token_repo):
        fake_dexcom.egv_status = 401

        with pytest.raises(RefreshInvalidError):
            await dexcom_source.fetch("user123")

        assert len(fake_dexcom.token_requests) == 1
        assert len(fake_dexcom.egv_requests) == 2
        assert token_repo.get("user123") is None

    @pytest.mark.asyncio
    async def test_provider_error_keeps_connection(self, connected, dexcom_source, fake_dexcom, token_repo):
        fake_dexcom.egv_status = 503

        with pytest.raises(ProviderUnavailableError):
            await dexcom_source.fetch("user123")

        assert token_repo.get("user123") is not None

    @pytest.mark.asyncio
    async def test_not_connected(self, dexcom_source):
        with pytest.raises(RefreshInvalidError):
            await dexcom_source.fetch("user123")

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, dexcom_source, fake_dexcom, token_repo):
        assert await dexcom_source.connect("user123") is False

        assert await dexcom_source.connect("user123", "ABC123") is True
        assert fake_dexcom.token_requests[0]["code"] == "ABC123"
        assert await dexcom_source.connect("user123") is True

        assert await dexcom_source.disconnect("user123") is True
        assert token_repo.get("user123") is None


class TestSimulatedGlucoseSource:
    @pytest.mark.asyncio
    async def test_one_reading_in_range_per_fetch(self):
        now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        source = SimulatedGlucoseSource(rng=random.Random(42), clock=lambda: now)

        for _ in range(20):
            readings = await source.fetch("demo")
            assert len(readings) == 1
            assert 60 <= readings[0].value <= 250
            assert readings[0].timestamp == now

    @pytest.mark.asyncio
    async def test_connect_needs_no_credentials(self):
        source = SimulatedGlucoseSource()
        assert await source.connect("demo") is True
        assert await source.disconnect("demo") is True

    def test_invalid_bounds(self):
        with pytest.raises(ValueError):
            SimulatedGlucoseSource(low=200, high=100)


def test_make_source_follows_settings(monkeypatch):
    assert isinstance(make_source(), DexcomGlucoseSource)

    monkeypatch.setenv("DATA_SOURCE", "simulated")
    get_settings.cache_clear()
    assert isinstance(make_source(), SimulatedGlucoseSource)
