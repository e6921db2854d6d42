"""API endpoints for connecting a Dexcom account."""

import logging
import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from cgm_link.api.dependencies import get_session
from cgm_link.auth.oauth import build_dexcom_auth_url, require_dexcom_credentials
from cgm_link.pipeline.session import GlucoseSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["dexcom"])


class OAuthTokenRequest(BaseModel):
    authorizationCode: Optional[str] = None


@router.get("/authorize-url")
async def get_authorize_url() -> Dict[str, Any]:
    """
    Build the Dexcom login URL the client should redirect the user to.

    Returns:
        Dict[str, Any]: The URL and the ``state`` value it carries
    """
    client_id, _, redirect_uri = require_dexcom_credentials()
    state = secrets.token_urlsafe(16)
    return {
        "status": "success",
        "data": {
            "url": build_dexcom_auth_url(client_id, redirect_uri, state=state),
            "state": state,
        },
    }


@router.post("/oauth-token")
async def exchange_oauth_token(
    body: Optional[OAuthTokenRequest] = None,
    session: GlucoseSession = Depends(get_session),
) -> Dict[str, Any]:
    """
    Exchange the authorization code from the OAuth callback and start polling.

    Args:
        body: Request body carrying ``authorizationCode``
        session: The caller's glucose session

    Returns:
        Dict[str, Any]: ``{"success": true}``
    """
    if body is None or not body.authorizationCode:
        raise HTTPException(status_code=400, detail="Missing authorizationCode")
    await session.connect(body.authorizationCode)
    return {"success": True}


@router.post("/glucose")
async def fetch_glucose(session: GlucoseSession = Depends(get_session)) -> Dict[str, Any]:
    """Refresh the token if needed and fetch the last 24 hours of readings."""
    readings = await session.fetch_now()
    return {
        "status": "success",
        "data": {"egvs": [reading.model_dump(mode="json") for reading in readings]},
    }


@router.post("/connection")
async def resume_connection(session: GlucoseSession = Depends(get_session)) -> Dict[str, Any]:
    """
    Resume polling from the stored Dexcom tokens without a new OAuth code.

    Returns:
        Dict[str, Any]: Whether the user is connected and the polling state
    """
    connected = await session.resume()
    return {
        "status": "success",
        "data": {"connected": connected, "state": session.state.value},
    }


@router.delete("/connection")
async def disconnect(session: GlucoseSession = Depends(get_session)) -> Dict[str, Any]:
    """Stop polling and remove the stored Dexcom tokens."""
    await session.disconnect()
    return {"success": True}
