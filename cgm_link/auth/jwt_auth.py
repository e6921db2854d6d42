"""Verification of the caller's own session JWT."""
import logging
from typing import Optional

import jwt

from cgm_link.utils.config import get_settings
from cgm_link.utils.error_handling import UnauthenticatedError

logger = logging.getLogger(__name__)


def user_id_from_authorization(authorization: Optional[str]) -> str:
    """
    Resolve the user ID from an ``Authorization: Bearer <jwt>`` header value.

    Raises:
        UnauthenticatedError: If the header is missing, malformed, expired or badly signed
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthenticatedError("Unauthorized: No Authorization header", status_code=401)
    return decode_session_token(authorization[len("Bearer "):])


def decode_session_token(token: str) -> str:
    """
    Validate a HS256 session token and return its subject.

    Raises:
        UnauthenticatedError: If the token is expired or invalid
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key.get_secret_value(),
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            options={"require": ["exp", "iss", "aud", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token has expired", status_code=401)
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid session token: {e}", extra={"log_type": "auth_invalid_token"})
        raise UnauthenticatedError("Unauthorized: Invalid token", status_code=401)
    return payload["sub"]
