"""Tests for the Dexcom connection endpoints."""

import urllib.parse
from unittest import mock

import pytest

from cgm_link.models.settings import ConnectionState
from cgm_link.pipeline.scheduler import SchedulerState
from cgm_link.utils.config import get_settings

USER_ID = "testuser"


class TestAuthorizeUrl:
    @pytest.mark.asyncio
    async def test_returns_login_url_with_state(self, client, auth_headers):
        response = await client.get("/api/dexcom/authorize-url", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        query = dict(urllib.parse.parse_qsl(urllib.parse.urlparse(data["url"]).query))
        assert query["client_id"] == "test-client-id"
        assert query["response_type"] == "code"
        assert query["scope"] == "offline_access"
        assert query["state"] == data["state"]

    @pytest.mark.asyncio
    async def test_missing_configuration(self, client, auth_headers, monkeypatch):
        monkeypatch.delenv("DEXCOM_CLIENT_ID")
        get_settings.cache_clear()

        response = await client.get("/api/dexcom/authorize-url", headers=auth_headers)

        assert response.status_code == 500
        assert "DEXCOM_CLIENT_ID" in response.json()["message"]


class TestOAuthToken:
    @pytest.mark.asyncio
    async def test_exchange_starts_polling(self, client, app, auth_headers, fake_dexcom, token_repo):
        fake_dexcom.add_recent_readings(100, 105)

        response = await client.post(
            "/api/dexcom/oauth-token", json={"authorizationCode": "ABC123"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert fake_dexcom.token_requests[0]["code"] == "ABC123"
        assert token_repo.get(USER_ID) is not None

        session = app.state.sessions.get(USER_ID)
        await session.scheduler.wait_idle()
        assert session.state == SchedulerState.POLLING
        assert len(session.get_history(24)) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"authorizationCode": ""}, None])
    async def test_missing_code(self, client, auth_headers, fake_dexcom, body):
        response = await client.post("/api/dexcom/oauth-token", json=body, headers=auth_headers)

        assert response.status_code == 400
        assert fake_dexcom.token_requests == []

    @pytest.mark.asyncio
    async def test_rejected_code(self, client, auth_headers, fake_dexcom, token_repo):
        fake_dexcom.token_status = 400

        response = await client.post(
            "/api/dexcom/oauth-token", json={"authorizationCode": "used"}, headers=auth_headers
        )

        assert response.status_code == 400
        assert response.json()["details"] == {"error": "invalid_grant"}
        assert token_repo.get(USER_ID) is None

    @pytest.mark.asyncio
    async def test_requires_session_token(self, client, fake_dexcom):
        response = await client.post("/api/dexcom/oauth-token", json={"authorizationCode": "ABC123"})

        assert response.status_code == 401
        assert fake_dexcom.token_requests == []


class TestFetchGlucose:
    @pytest.mark.asyncio
    async def test_not_connected(self, client, auth_headers):
        response = await client.post("/api/dexcom/glucose", headers=auth_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_fetch_refreshes_expired_token(self, client, auth_headers, fake_dexcom, token_repo, make_token_record):
        token_repo.create(make_token_record(user_id=USER_ID, expires_in=-60))
        fake_dexcom.issued = 1
        fake_dexcom.add_recent_readings(99)

        response = await client.post("/api/dexcom/glucose", headers=auth_headers)

        assert response.status_code == 200
        egvs = response.json()["data"]["egvs"]
        assert [egv["value"] for egv in egvs] == [99]
        assert token_repo.get(USER_ID).access_token.get_secret_value() == "access-2"

    @pytest.mark.asyncio
    async def test_rejected_refresh(self, client, auth_headers, fake_dexcom, token_repo, make_token_record):
        token_repo.create(make_token_record(user_id=USER_ID, expires_in=-60))
        fake_dexcom.token_status = 400

        response = await client.post("/api/dexcom/glucose", headers=auth_headers)

        assert response.status_code == 400
        assert "re-connect" in response.json()["message"]
        assert token_repo.get(USER_ID) is None

    @pytest.mark.asyncio
    async def test_rejected_refresh_stops_polling_session(self, client, app, auth_headers, fake_dexcom, token_repo, make_token_record):
        await client.post("/api/dexcom/oauth-token", json={"authorizationCode": "ABC123"}, headers=auth_headers)
        session = app.state.sessions.get(USER_ID)
        await session.scheduler.wait_idle()
        reauth = mock.Mock()
        session.subscribe("reauth_required", reauth)
        token_repo.create(make_token_record(user_id=USER_ID, expires_in=-1))
        fake_dexcom.token_status = 400

        response = await client.post("/api/dexcom/glucose", headers=auth_headers)

        assert response.status_code == 400
        assert session.state == SchedulerState.IDLE
        assert session.connection_state == ConnectionState.DISCONNECTED
        reauth.assert_called_once()

    @pytest.mark.asyncio
    async def test_provider_unavailable(self, client, auth_headers, fake_dexcom, token_repo, make_token_record):
        token_repo.create(make_token_record(user_id=USER_ID))
        fake_dexcom.valid_access_tokens = {"access-1"}
        fake_dexcom.egv_status = 503

        response = await client.post("/api/dexcom/glucose", headers=auth_headers)

        assert response.status_code == 502


class TestResumeConnection:
    @pytest.mark.asyncio
    async def test_resumes_polling_from_stored_tokens(self, client, app, auth_headers, fake_dexcom, token_repo, make_token_record):
        token_repo.create(make_token_record(user_id=USER_ID))
        fake_dexcom.valid_access_tokens = {"access-1"}
        fake_dexcom.add_recent_readings(120)

        response = await client.post("/api/dexcom/connection", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["data"] == {"connected": True, "state": "polling"}
        assert fake_dexcom.token_requests == []
        session = app.state.sessions.get(USER_ID)
        await session.scheduler.wait_idle()
        assert session.get_current_reading().value == 120

    @pytest.mark.asyncio
    async def test_without_stored_tokens(self, client, auth_headers, fake_dexcom):
        response = await client.post("/api/dexcom/connection", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["data"] == {"connected": False, "state": "idle"}
        assert fake_dexcom.egv_requests == []


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_removes_tokens(self, client, app, auth_headers, token_repo, make_token_record):
        token_repo.create(make_token_record(user_id=USER_ID))

        response = await client.delete("/api/dexcom/connection", headers=auth_headers)

        assert response.status_code == 200
        assert token_repo.get(USER_ID) is None
        assert app.state.sessions.get(USER_ID).state == SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_failed_token_removal(self, client, auth_headers, token_repo, make_token_record):
        token_repo.create(make_token_record(user_id=USER_ID))

        with mock.patch("cgm_link.pipeline.sources.delete_token", mock.AsyncMock(return_value=False)):
            response = await client.delete("/api/dexcom/connection", headers=auth_headers)

        assert response.status_code == 503
        assert token_repo.get(USER_ID) is not None
