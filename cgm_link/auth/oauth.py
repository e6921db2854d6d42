"""
OAuth2 implementation for the Dexcom API.

This module builds the authorization URL and performs the two token
endpoint grants: authorization-code exchange and refresh-token rotation.
"""
import logging
import urllib.parse
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx
from pydantic import BaseModel, Field, ValidationError

from cgm_link.metrics import oauth_exchange_total, token_refresh_total
from cgm_link.models.tokens import utcnow
from cgm_link.utils.config import Settings, get_settings
from cgm_link.utils.error_handling import (
    ConfigMissingError,
    ExchangeFailedError,
    MalformedResponseError,
    ProviderUnavailableError,
    RefreshInvalidError,
)

logger = logging.getLogger(__name__)

TOKEN_PATH = "/v2/oauth2/token"
LOGIN_PATH = "/v2/oauth2/login"


class TokenResponse(BaseModel):
    """OAuth2 token response model."""

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    scope: str = "offline_access"

    issued_at: datetime = Field(default_factory=utcnow)

    @property
    def expires_at(self) -> datetime:
        """Calculate when the token will expire."""
        return self.issued_at + timedelta(seconds=self.expires_in)


def require_dexcom_credentials(settings: Optional[Settings] = None) -> Tuple[str, str, str]:
    """
    Return ``(client_id, client_secret, redirect_uri)`` from settings.

    Raises:
        ConfigMissingError: If any of the three is not configured
    """
    settings = settings or get_settings()
    client_secret = settings.dexcom_client_secret.get_secret_value() if settings.dexcom_client_secret else None
    values = {
        "DEXCOM_CLIENT_ID": settings.dexcom_client_id,
        "DEXCOM_CLIENT_SECRET": client_secret,
        "DEXCOM_REDIRECT_URI": settings.dexcom_redirect_uri,
    }
    missing = [name for name, value in values.items() if not value]
    if missing:
        logger.error("Dexcom API credentials are not configured", extra={"log_type": "config_missing", "missing": missing})
        raise ConfigMissingError(missing)
    return settings.dexcom_client_id, client_secret, settings.dexcom_redirect_uri


def build_dexcom_auth_url(
    client_id: str,
    redirect_uri: str,
    state: Optional[str] = None,
    scope: Optional[Union[str, List[str]]] = None,
) -> str:
    """
    Build the Dexcom OAuth2 login URL the user is redirected to.

    Args:
        client_id: The OAuth2 client ID
        redirect_uri: The redirect URI, exactly as registered with Dexcom
        state: Optional random value for CSRF protection
        scope: Optional scope(s) to request, defaults to ['offline_access']

    Returns:
        str: The complete authorization URL
    """
    settings = get_settings()
    base_url = f"{settings.dexcom_api_base_url.rstrip('/')}{LOGIN_PATH}"

    if scope is None:
        scope = ["offline_access"]
    elif isinstance(scope, str):
        scope = [s.strip() for s in scope.split(' ') if s.strip()]

    params: Dict[str, str] = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scope),
    }
    if state:
        params["state"] = state

    return f"{base_url}?{urllib.parse.urlencode(params)}"


def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


async def _post_token_request(data: Dict[str, str], client: Optional[httpx.AsyncClient]) -> httpx.Response:
    settings = get_settings()
    token_url = f"{settings.dexcom_api_base_url.rstrip('/')}{TOKEN_PATH}"
    headers = {
        "Content-Type": "application/x-www-form-urlencoded",
        "Accept": "application/json",
    }
    try:
        if client is not None:
            return await client.post(token_url, data=data, headers=headers)
        async with httpx.AsyncClient(timeout=httpx.Timeout(settings.request_timeout_seconds)) as own_client:
            return await own_client.post(token_url, data=data, headers=headers)
    except httpx.RequestError as e:
        logger.error(
            f"Network error calling Dexcom token endpoint: {e.__class__.__name__}",
            extra={"log_type": "token_endpoint_error", "grant_type": data["grant_type"]},
        )
        raise ProviderUnavailableError(f"Dexcom token endpoint unreachable: {e.__class__.__name__}")


def _parse_token_response(response: httpx.Response) -> TokenResponse:
    try:
        return TokenResponse(**response.json())
    except (ValueError, TypeError, ValidationError) as e:
        logger.error(f"Failed to parse token response: {e.__class__.__name__}", extra={"log_type": "token_parse_error"})
        raise MalformedResponseError("Dexcom token response did not match the expected schema")


async def exchange_code_for_tokens(
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    client: Optional[httpx.AsyncClient] = None,
) -> TokenResponse:
    """
    Exchange an authorization code for access and refresh tokens.

    Authorization codes are single use, so a rejected code is never retried.

    Args:
        code: Authorization code from the callback
        client_id: OAuth2 client ID
        client_secret: OAuth2 client secret
        redirect_uri: Redirect URI that was used for authorization
        client: Optional HTTP client to send the request with

    Returns:
        TokenResponse: Object containing the token response data

    Raises:
        ExchangeFailedError: If Dexcom rejected the code (body attached as ``details``)
        ProviderUnavailableError: On network errors or a 5xx from Dexcom
        MalformedResponseError: If the success payload cannot be parsed
    """
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "client_secret": client_secret,
    }
    try:
        response = await _post_token_request(data, client)
    except ProviderUnavailableError:
        oauth_exchange_total.labels(outcome="unavailable").inc()
        raise

    if response.status_code >= 500:
        oauth_exchange_total.labels(outcome="unavailable").inc()
        raise ProviderUnavailableError("Dexcom token endpoint unavailable", status_code=response.status_code)
    if response.status_code != 200:
        body = _error_body(response)
        oauth_exchange_total.labels(outcome="exchange_failed").inc()
        logger.error(
            "Dexcom token exchange failed",
            extra={"log_type": "token_exchange_error", "status_code": response.status_code, "error": body},
        )
        raise ExchangeFailedError(
            "Failed to exchange authorization code for tokens.",
            status_code=response.status_code,
            details=body,
        )

    token_response = _parse_token_response(response)
    oauth_exchange_total.labels(outcome="success").inc()
    return token_response


async def refresh_access_token(
    refresh_token: str,
    client_id: str,
    client_secret: str,
    client: Optional[httpx.AsyncClient] = None,
) -> TokenResponse:
    """
    Rotate a refresh token into a new access/refresh token pair.

    Args:
        refresh_token: The refresh token; it is invalid after this call succeeds
        client_id: OAuth2 client ID
        client_secret: OAuth2 client secret
        client: Optional HTTP client to send the request with

    Returns:
        TokenResponse: Object containing the new token data

    Raises:
        RefreshInvalidError: If Dexcom rejected the refresh token (revoked, expired or superseded)
        ProviderUnavailableError: On network errors or a 5xx from Dexcom
        MalformedResponseError: If the success payload cannot be parsed
    """
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
        "client_secret": client_secret,
    }
    try:
        response = await _post_token_request(data, client)
    except ProviderUnavailableError:
        token_refresh_total.labels(outcome="unavailable").inc()
        raise

    if response.status_code >= 500:
        token_refresh_total.labels(outcome="unavailable").inc()
        raise ProviderUnavailableError("Dexcom token endpoint unavailable", status_code=response.status_code)
    if response.status_code != 200:
        body = _error_body(response)
        token_refresh_total.labels(outcome="invalid").inc()
        logger.error(
            "Dexcom token refresh failed",
            extra={"log_type": "token_refresh_error", "status_code": response.status_code, "error": body},
        )
        raise RefreshInvalidError(
            "Failed to refresh Dexcom token. Please re-connect Dexcom.",
            status_code=response.status_code,
            details=body,
        )

    return _parse_token_response(response)


def validate_redirect_uri(redirect_uri: str) -> bool:
    """
    Validate that a redirect URI is allowed.

    Args:
        redirect_uri: The redirect URI to validate

    Returns:
        bool: True if the redirect URI is allowed, False otherwise
    """
    settings = get_settings()
    allowed_uris = [settings.dexcom_redirect_uri] if settings.dexcom_redirect_uri else []

    if settings.service_env == "development":
        allowed_uris.extend([
            "http://localhost:5001/dexcom-callback",
            "http://localhost:3000/dexcom-callback",
        ])

    return redirect_uri in allowed_uris
