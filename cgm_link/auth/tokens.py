"""
OAuth2 token lifecycle: exchange, storage and refresh of Dexcom tokens.

Refreshes for one user are serialized by a per-user lock inside the process,
and across processes by conditional writes in the token repository keyed on
the refresh token being spent. Dexcom issues a new refresh token on every
rotation and the old one stops working, so a stale record is never reused.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

import httpx
from pydantic import SecretStr

from cgm_link.auth.oauth import (
    TokenResponse,
    exchange_code_for_tokens,
    refresh_access_token,
    require_dexcom_credentials,
)
from cgm_link.data.token_repository import get_token_repository
from cgm_link.metrics import token_refresh_total
from cgm_link.models.tokens import TokenRecord
from cgm_link.utils.config import get_settings
from cgm_link.utils.error_handling import RefreshInvalidError, TokenConflictError

logger = logging.getLogger(__name__)

NOT_CONNECTED_MESSAGE = "Dexcom tokens not found for user. Please connect Dexcom first."

_refresh_locks: Dict[str, asyncio.Lock] = {}


def _user_lock(user_id: str) -> asyncio.Lock:
    lock = _refresh_locks.get(user_id)
    if lock is None:
        lock = _refresh_locks[user_id] = asyncio.Lock()
    return lock


def _refresh_skew() -> timedelta:
    return timedelta(seconds=get_settings().token_refresh_skew_seconds)


async def store_token(user_id: str, token_response: TokenResponse) -> TokenRecord:
    """
    Upsert the token record for a user.

    Args:
        user_id: The user's ID
        token_response: The OAuth token response to store

    Returns:
        TokenRecord: The stored record
    """
    record = TokenRecord(
        user_id=user_id,
        access_token=SecretStr(token_response.access_token),
        refresh_token=SecretStr(token_response.refresh_token),
        expires_at=token_response.expires_at,
        scope=token_response.scope,
    )

    repo = get_token_repository()
    existing = repo.get(user_id)
    if existing:
        record.created_at = existing.created_at
        logger.info("Dexcom tokens updated", extra={"log_type": "token_store", "user_id": user_id})
        return repo.update(record)
    logger.info("Dexcom tokens inserted", extra={"log_type": "token_store", "user_id": user_id})
    return repo.create(record)


async def exchange_code_and_store(
    user_id: str,
    code: str,
    client: Optional[httpx.AsyncClient] = None,
) -> TokenRecord:
    """
    Exchange an authorization code for tokens and store them.

    Args:
        user_id: The authenticated user's ID
        code: The single-use authorization code from the OAuth callback
        client: Optional HTTP client for the token request

    Returns:
        TokenRecord: The stored record

    Raises:
        ConfigMissingError: If Dexcom client credentials are not configured
        ExchangeFailedError: If Dexcom rejected the code
    """
    client_id, client_secret, redirect_uri = require_dexcom_credentials()

    token_response = await exchange_code_for_tokens(
        code=code,
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        client=client,
    )
    return await store_token(user_id, token_response)


async def get_token(user_id: str) -> Optional[TokenRecord]:
    """Return the stored record for *user_id* without refreshing it."""
    return get_token_repository().get(user_id)


async def ensure_fresh_token(
    user_id: str,
    skew: Optional[timedelta] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> TokenRecord:
    """
    Return a token record whose access token is usable for at least *skew*.

    A record expiring within the skew window is refreshed first; otherwise it
    is returned unchanged.

    Raises:
        RefreshInvalidError: If the user is not connected or the refresh token was rejected
        ProviderUnavailableError: If Dexcom could not be reached; the record is left as is
    """
    skew = _refresh_skew() if skew is None else skew
    repo = get_token_repository()

    record = repo.get(user_id)
    if record is None:
        raise RefreshInvalidError(NOT_CONNECTED_MESSAGE, status_code=404)
    if not record.is_stale(skew):
        return record

    async with _user_lock(user_id):
        # Another coroutine may have rotated while we waited.
        record = repo.get(user_id)
        if record is None:
            raise RefreshInvalidError(NOT_CONNECTED_MESSAGE, status_code=404)
        if not record.is_stale(skew):
            return record
        logger.info(
            "Access token expired or near expiration, refreshing",
            extra={"log_type": "token_refresh", "user_id": user_id},
        )
        return await _rotate(record, client)


async def force_refresh(
    user_id: str,
    rejected_access_token: str,
    client: Optional[httpx.AsyncClient] = None,
) -> TokenRecord:
    """
    Refresh after the data endpoint rejected *rejected_access_token*.

    If the stored access token already differs, someone else rotated in the
    meantime and the stored record is returned as is.
    """
    repo = get_token_repository()
    async with _user_lock(user_id):
        record = repo.get(user_id)
        if record is None:
            raise RefreshInvalidError(NOT_CONNECTED_MESSAGE, status_code=404)
        if record.access_token.get_secret_value() != rejected_access_token:
            return record
        logger.info(
            "Access token rejected by Dexcom, forcing refresh",
            extra={"log_type": "token_refresh", "user_id": user_id},
        )
        return await _rotate(record, client)


async def _rotate(record: TokenRecord, client: Optional[httpx.AsyncClient]) -> TokenRecord:
    repo = get_token_repository()
    client_id, client_secret, _ = require_dexcom_credentials()
    spent = record.refresh_token.get_secret_value()

    try:
        token_response = await refresh_access_token(
            refresh_token=spent,
            client_id=client_id,
            client_secret=client_secret,
            client=client,
        )
    except RefreshInvalidError:
        if repo.delete_if_refresh_token(record.user_id, spent):
            logger.warning(
                "Refresh token rejected, token record deleted",
                extra={"log_type": "token_refresh_invalid", "user_id": record.user_id},
            )
            raise
        # A concurrent session already rotated past the spent token.
        current = repo.get(record.user_id)
        if current is not None and not current.is_expired():
            return current
        raise

    rotated = TokenRecord(
        user_id=record.user_id,
        access_token=SecretStr(token_response.access_token),
        refresh_token=SecretStr(token_response.refresh_token),
        expires_at=token_response.expires_at,
        scope=token_response.scope,
        created_at=record.created_at,
    )
    try:
        stored = repo.replace_if_refresh_token(rotated, spent)
    except TokenConflictError:
        token_refresh_total.labels(outcome="conflict").inc()
        current = repo.get(record.user_id)
        if current is None:
            raise RefreshInvalidError("Dexcom connection was removed during token refresh.")
        logger.info(
            "Token record changed during refresh, using stored record",
            extra={"log_type": "token_refresh_conflict", "user_id": record.user_id},
        )
        return current

    token_refresh_total.labels(outcome="success").inc()
    logger.info(
        "Tokens refreshed and updated successfully",
        extra={"log_type": "token_refresh_success", "user_id": record.user_id, "expires_in": token_response.expires_in},
    )
    return stored


async def delete_token(user_id: str) -> bool:
    """
    Delete the token record for a user.

    Args:
        user_id: The user's ID

    Returns:
        bool: True if the record was deleted successfully, False otherwise
    """
    repo = get_token_repository()
    try:
        result = repo.delete(user_id)
        logger.info("Deleted Dexcom tokens", extra={"log_type": "token_delete", "user_id": user_id})
        return result
    except Exception as e:
        logger.error(f"Failed to delete Dexcom tokens: {e}", extra={"log_type": "token_delete_error", "user_id": user_id})
        return False
