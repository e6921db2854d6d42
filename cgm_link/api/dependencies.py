"""FastAPI dependencies shared by the routers."""

from fastapi import Request

from cgm_link.pipeline.session import GlucoseSession, SessionRegistry
from cgm_link.utils.error_handling import UnauthenticatedError


def get_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise UnauthenticatedError("Unauthorized: No Authorization header", status_code=401)
    return user_id


def get_sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_session(request: Request) -> GlucoseSession:
    """The caller's session, created on first use."""
    return get_sessions(request).get(get_user_id(request))
