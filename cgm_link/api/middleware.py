"""Middleware for authentication, request IDs and the metrics endpoint."""

import base64
import binascii
import logging
import secrets
import uuid
from typing import Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.status import HTTP_401_UNAUTHORIZED

from cgm_link.auth.jwt_auth import user_id_from_authorization
from cgm_link.utils.error_handling import UnauthenticatedError

logger = logging.getLogger(__name__)

PUBLIC_PATHS = {"/health", "/metrics", "/metrics/", "/docs", "/openapi.json"}


class MetricsAuthMiddleware:
    """HTTP basic auth in front of the Prometheus ASGI app."""

    def __init__(self, app, username: str, password: str):
        self.app = app
        self.username = username
        self.password = password

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and not self._authorized(scope):
            response = Response(
                status_code=HTTP_401_UNAUTHORIZED,
                headers={"WWW-Authenticate": "Basic"},
            )
            await response(scope, receive, send)
            return
        await self.app(scope, receive, send)

    def _authorized(self, scope) -> bool:
        headers = dict(scope.get("headers") or [])
        auth_header = headers.get(b"authorization")
        if not auth_header or not auth_header.startswith(b"Basic "):
            return False
        try:
            decoded = base64.b64decode(auth_header.split(b" ", 1)[1]).decode()
            username, password = decoded.split(":", 1)
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return False
        return secrets.compare_digest(username, self.username) and secrets.compare_digest(password, self.password)


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Resolve ``request.state.user_id`` from the session JWT on every non-public path."""

    def __init__(self, app, public_paths: Optional[Iterable[str]] = None):
        super().__init__(app)
        self.public_paths = set(public_paths or PUBLIC_PATHS)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.public_paths or path.startswith("/metrics/") or request.method == "OPTIONS":
            return await call_next(request)
        try:
            request.state.user_id = user_id_from_authorization(request.headers.get("Authorization"))
        except UnauthenticatedError as e:
            logger.warning(
                f"401 Unauthorized: {e.message}",
                extra={"path": path, "status_code": 401, "log_type": "auth_rejected"},
            )
            return JSONResponse(status_code=401, content={"status": "error", "message": e.message})
        return await call_next(request)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Track and propagate a unique request ID for each request.
    Adds X-Request-ID to response headers and attaches to request.state.
    """

    async def dispatch(self, request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
