"""
FastAPI application factory for the usersync HTTP API.

This module creates the FastAPI app with:
- CORS configuration
- Bearer token authentication on every /api route
- Typed error bodies for UserSyncError subclasses
- A /health endpoint
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..config import ServerConfig
from ..errors import (
    BusError,
    NotFoundError,
    ProtocolError,
    StoreError,
    UserSyncError,
    ValidationError,
)
from ..pipeline.mutations import MutationPipeline
from ..replication.protocol import ReplicationProtocol
from .auth import StubTokenVerifier, TokenVerifier
from .routes import router

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (ProtocolError, 400),
    (NotFoundError, 404),
    (StoreError, 503),
    (BusError, 503),
)


def status_for(error: UserSyncError) -> int:
    """HTTP status for an error; unknown subclasses map to 500."""
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(
    pipeline: MutationPipeline,
    protocol: ReplicationProtocol,
    verifier: TokenVerifier | None = None,
    config: ServerConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or ServerConfig()

    app = FastAPI(
        title="usersync",
        description="Versioned user records with bus fan-out and client replication.",
        version=__version__,
    )
    app.state.pipeline = pipeline
    app.state.protocol = protocol
    app.state.verifier = verifier or StubTokenVerifier()
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.http.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(UserSyncError)
    async def handle_usersync_error(request: Request, exc: UserSyncError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "error_code": exc.code, "error": exc.message},
            )
        return JSONResponse(status_code=status, content=exc.to_dict())

    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": "usersync",
            "version": __version__,
            "bus_connected": pipeline.publisher.bus.is_connected,
        }

    return app
