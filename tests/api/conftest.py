"""Fixtures for the HTTP surface."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from cgm_link.auth.dexcom_client import DexcomApiClient
from cgm_link.main import create_app
from cgm_link.pipeline.session import GlucoseSession, SessionRegistry
from cgm_link.pipeline.sources import DexcomGlucoseSource

USER_ID = "testuser"


def make_jwt(sub=USER_ID, exp=None, secret="test-jwt-secret", issuer="cgm-link", audience="cgm-link-users"):
    payload = {
        "sub": sub,
        "iss": issuer,
        "aud": audience,
        "exp": exp or (datetime.now(timezone.utc) + timedelta(minutes=5)),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def jwt_factory():
    return make_jwt


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_jwt()}"}


@pytest.fixture
def app(fake_dexcom):
    """Application whose sessions talk to the fake Dexcom provider."""
    app = create_app()
    http_client = fake_dexcom.client()

    def session_factory(user_id):
        source = DexcomGlucoseSource(api_client=DexcomApiClient(client=http_client), http_client=http_client)
        return GlucoseSession(user_id, source=source)

    app.state.sessions = SessionRegistry(factory=session_factory)
    return app


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await app.state.sessions.close_all()
