"""
REST API.

FastAPI interface over the authorization engine, served by the daemon.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gatekeeper import __version__
from gatekeeper.api.auth import init_auth, key_manager, require_api_key
from gatekeeper.api.routes import deps, router
from gatekeeper.core.engine import AuthorizationEngine
from gatekeeper.errors import GatekeeperError

logger = logging.getLogger(__name__)


# Error kind -> HTTP status
ERROR_STATUS = {
    "not_found": 404,
    "invalid_pattern": 422,
    "enforcement_error": 502,
    "persistence_error": 500,
    "privilege_error": 403,
    "config_error": 500,
}


# ============================================================================
# Application Lifecycle
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting USB Gatekeeper API")
    yield
    logger.info("Shutting down USB Gatekeeper API")


# ============================================================================
# FastAPI Application
# ============================================================================


def create_app(
    title: str = "USB Gatekeeper API",
    debug: bool = False,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        title: API title
        debug: Enable debug mode

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=title,
        description="REST API for USB device authorization",
        version=__version__,
        debug=debug,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    app.include_router(router)

    @app.exception_handler(GatekeeperError)
    async def gatekeeper_error_handler(request: Request, exc: GatekeeperError):
        """Map error kinds to HTTP status codes."""
        status_code = ERROR_STATUS.get(exc.kind, 500)
        if status_code >= 500:
            logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error("Unhandled exception: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "kind": "internal_error",
                    "message": str(exc) if debug else "Internal server error",
                },
            },
        )

    return app


def configure_services(
    app: FastAPI,
    engine: AuthorizationEngine | None = None,
    api_key: str | None = None,
) -> None:
    """
    Configure application services.

    Args:
        app: FastAPI application
        engine: Authorization engine instance
        api_key: Key clients must send in X-API-Key
    """
    deps.engine = engine
    init_auth(api_key)
    logger.info("API services configured")


__all__ = [
    "ERROR_STATUS",
    "configure_services",
    "create_app",
    "deps",
    "init_auth",
    "key_manager",
    "require_api_key",
    "router",
]
