"""Test configuration and shared fixtures."""

import os
import urllib.parse
from datetime import datetime, timedelta, timezone
from typing import List, Optional

# Configure the service before any cgm_link module reads settings.
os.environ["SERVICE_ENV"] = "test"
os.environ["TOKEN_STORE_BACKEND"] = "memory"
os.environ["DATA_SOURCE"] = "dexcom"
os.environ["DEXCOM_CLIENT_ID"] = "test-client-id"
os.environ["DEXCOM_CLIENT_SECRET"] = "test-client-secret"
os.environ["DEXCOM_REDIRECT_URI"] = "http://localhost:3000/dexcom-callback"
os.environ["DEXCOM_API_BASE_URL"] = "https://sandbox-api.dexcom.com"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["METRICS_USER"] = "metrics"
os.environ["METRICS_PASS"] = "metrics-pass"

import httpx
import pytest
from pydantic import SecretStr

from cgm_link.auth import tokens as token_module
from cgm_link.auth.dexcom_client import DexcomApiClient
from cgm_link.data.token_repository import get_token_repository, reset_token_repository
from cgm_link.models.glucose import GlucoseReading, TrendDirection
from cgm_link.models.tokens import TokenRecord
from cgm_link.pipeline.sources import DexcomGlucoseSource
from cgm_link.utils.config import get_settings


@pytest.fixture(autouse=True)
def reset_state():
    """Fresh settings, token store and refresh locks for every test."""
    get_settings.cache_clear()
    reset_token_repository()
    token_module._refresh_locks.clear()
    yield
    get_settings.cache_clear()
    reset_token_repository()
    token_module._refresh_locks.clear()


@pytest.fixture
def token_repo():
    """The in-memory token repository."""
    return get_token_repository()


@pytest.fixture
def make_token_record():
    """Factory for token records expiring *expires_in* seconds from now."""
    def _make(user_id="user123", access_token="access-1", refresh_token="refresh-1", expires_in=3600):
        return TokenRecord(
            user_id=user_id,
            access_token=SecretStr(access_token),
            refresh_token=SecretStr(refresh_token),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )
    return _make


@pytest.fixture
def sample_glucose_reading():
    """Create a sample glucose reading for testing."""
    return GlucoseReading(
        timestamp=datetime.now(timezone.utc),
        value=120,
        trend=TrendDirection.STEADY,
    )


@pytest.fixture
def sample_glucose_readings():
    """Five readings five minutes apart, oldest first."""
    now = datetime.now(timezone.utc)
    return [
        GlucoseReading(
            timestamp=now - timedelta(minutes=5 * i),
            value=120 - i * 2,
            trend=TrendDirection.FALLING if i > 0 else TrendDirection.STEADY,
        )
        for i in reversed(range(5))
    ]


def egv_record(timestamp: datetime, value, trend="flat") -> dict:
    """One entry of a Dexcom ``/v3/users/self/egvs`` response."""
    return {
        "recordId": f"rec-{timestamp.timestamp():.0f}",
        "systemTime": timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S"),
        "displayTime": timestamp.strftime("%Y-%m-%dT%H:%M:%S"),
        "value": value,
        "trend": trend,
        "unit": "mg/dL",
    }


@pytest.fixture
def egv():
    return egv_record


class FakeDexcom:
    """
    Issues ``access-N``/``refresh-N`` pairs and serves EGVs to the current
    access token only.
    """

    def __init__(self):
        self.issued = 0
        self.valid_access_tokens = set()
        self.token_status = 200
        self.egv_status: Optional[int] = None
        self.readings: List[dict] = []
        self.token_requests: List[dict] = []
        self.egv_requests: List[httpx.Request] = []

    def add_reading(self, timestamp: datetime, value: int, trend: str = "flat") -> None:
        self.readings.append({
            "systemTime": timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S"),
            "value": value,
            "trend": trend,
        })

    def add_recent_readings(self, *values: int) -> None:
        now = datetime.now(timezone.utc).replace(microsecond=0)
        for i, value in enumerate(values):
            self.add_reading(now - timedelta(minutes=5 * (len(values) - 1 - i)), value)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v2/oauth2/token":
            return self._token(request)
        if request.url.path == "/v3/users/self/egvs":
            return self._egvs(request)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_requests.append(dict(urllib.parse.parse_qsl(request.content.decode())))
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        self.issued += 1
        access_token = f"access-{self.issued}"
        self.valid_access_tokens = {access_token}
        return httpx.Response(200, json={
            "access_token": access_token,
            "refresh_token": f"refresh-{self.issued}",
            "expires_in": 3600,
            "token_type": "Bearer",
        })

    def _egvs(self, request: httpx.Request) -> httpx.Response:
        self.egv_requests.append(request)
        if self.egv_status is not None:
            return httpx.Response(self.egv_status, text="error")
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token not in self.valid_access_tokens:
            return httpx.Response(401, json={"error": "unauthorized"})
        return httpx.Response(200, json={"recordType": "egv", "records": list(self.readings)})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def fake_dexcom():
    return FakeDexcom()


@pytest.fixture
def dexcom_source(fake_dexcom):
    """A Dexcom source whose token and EGV calls go to ``fake_dexcom``."""
    client = fake_dexcom.client()
    return DexcomGlucoseSource(api_client=DexcomApiClient(client=client), http_client=client)
