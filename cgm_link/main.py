"""Main entry point for the CGM Link service."""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from cgm_link.api.dexcom import router as dexcom_router
from cgm_link.api.middleware import JWTAuthMiddleware, MetricsAuthMiddleware, RequestIDMiddleware
from cgm_link.api.session import router as session_router
from cgm_link.data.dynamodb import get_dynamodb_client
from cgm_link.pipeline.session import SessionRegistry
from cgm_link.utils.config import get_settings
from cgm_link.utils.error_handling import (
    CgmLinkError,
    ConfigMissingError,
    ExchangeFailedError,
    MalformedResponseError,
    ProviderUnavailableError,
    RefreshInvalidError,
    TokenConflictError,
    TokenStoreError,
    UnauthenticatedError,
    UnauthorizedError,
)
from cgm_link.utils.logging_utils import redact_sensitive_data, setup_json_logging

settings = get_settings()
setup_json_logging(settings.log_level, settings.log_output, settings.log_file_path)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    UnauthenticatedError: 401,
    ConfigMissingError: 500,
    UnauthorizedError: 401,
    ProviderUnavailableError: 502,
    MalformedResponseError: 502,
    TokenConflictError: 409,
    TokenStoreError: 503,
}


def error_status(exc: CgmLinkError) -> int:
    """HTTP status for a pipeline error."""
    if isinstance(exc, ExchangeFailedError):
        if exc.status_code and 400 <= exc.status_code < 500:
            return exc.status_code
        return 400
    if isinstance(exc, RefreshInvalidError):
        return 404 if exc.status_code == 404 else 400
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    """
    Application startup and shutdown events.

    Args:
        app: The FastAPI application instance

    Yields:
        None
    """
    logger.info("Starting CGM Link service...")

    if settings.service_env == "development" and settings.token_store_backend == "dynamodb":
        try:
            get_dynamodb_client().create_all_tables(wait=True)
            logger.info("DynamoDB tables created/verified")
        except Exception as e:
            logger.error(f"Error creating DynamoDB tables: {e}")

    yield

    logger.info("Shutting down CGM Link service...")
    await app.state.sessions.close_all()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: The configured FastAPI application
    """
    app = FastAPI(
        title="CGM Link",
        description="Dexcom OAuth token lifecycle and glucose polling service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.sessions = SessionRegistry()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(JWTAuthMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(dexcom_router, prefix="/api/dexcom")
    app.include_router(session_router, prefix="/api/session")

    @app.get("/health")
    async def health_check() -> Dict[str, str]:
        """
        Health check endpoint.

        Returns:
            dict: Health status
        """
        logger.info("Health check endpoint called", extra={"endpoint": "/health"})
        return {"status": "healthy", "service": "cgm-link"}

    metrics_app = make_asgi_app()
    app.mount(
        "/metrics",
        MetricsAuthMiddleware(metrics_app, settings.metrics_user, settings.metrics_pass.get_secret_value()),
    )

    @app.exception_handler(CgmLinkError)
    async def cgm_link_error_handler(request: Request, exc: CgmLinkError):
        status_code = error_status(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            f"{exc.__class__.__name__}: {exc.message}",
            extra={
                "log_type": "request_error",
                "path": request.url.path,
                "status_code": status_code,
                "request_id": getattr(request.state, "request_id", None),
            },
        )
        content: Dict[str, Any] = {"status": "error", "message": exc.message}
        if isinstance(exc.details, (dict, list)):
            content["details"] = redact_sensitive_data(exc.details)
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        safe_detail = redact_sensitive_data(detail) if isinstance(detail, (dict, list)) else detail
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": "error", "message": safe_detail},
            headers=getattr(exc, "headers", None),
        )

    # Unexpected errors never echo their text back to the client.
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error", extra={"path": request.url.path})
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Internal server error"},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cgm_link.main:app",
        host="0.0.0.0",
        port=5001,
        reload=True,
        log_level=settings.log_level.lower(),
    )
