"""
FastAPI Application Factory
===========================

Entry point for the Sentinel authentication service: OIDC login against an
external identity provider, with client credentials that can be rotated at
runtime through a watched secret directory.

Routers:
    - /auth/*       : OIDC login and callback
    - /health       : Health check endpoint

Environment Variables Required:
    - OIDC_ISSUER_URL: Provider issuer URL
    - REDIRECT_URL: Callback URL registered with the provider
    - OIDC_CLIENT_ID / OIDC_CLIENT_SECRET and/or SECRET_WATCH_PATH
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn sentinel.app.main:create_app --factory --reload --port 8080

    Production:
        uvicorn sentinel.app.main:create_app --factory --host 0.0.0.0 --port 8080
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sentinel.app.auth import Authenticator, auth_router
from sentinel.app.config import Settings, get_settings, validate_configuration
from sentinel.app.http_client import build_http_client
from sentinel.app.models import HealthResponse

SERVICE_NAME = "sentinel"
SERVICE_VERSION = "1.0.0"

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "no-referrer",
}


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def create_app(
    settings: Optional[Settings] = None,
    authenticator: Optional[Authenticator] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use (default: loaded from the environment)
        authenticator: Pre-built Authenticator; built at startup if omitted
        http_client: Provider HTTP client; built from settings if omitted

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
            - Validate configuration and log warnings
            - Build the provider HTTP client and the Authenticator
            - Start the credential watcher

        Shutdown:
            - Stop the credential watcher
            - Close the HTTP client if we created it
        """
        setup_logging(settings.LOG_LEVEL)
        logger = logging.getLogger("sentinel.main")

        report = validate_configuration(settings)
        for warning in report["warnings"]:
            logger.warning(warning)
        for error in report["errors"]:
            logger.error(error)

        owned_client = None
        auth = authenticator
        if auth is None:
            client = http_client
            if client is None:
                client = owned_client = build_http_client(settings)
            auth = await Authenticator.create(settings, client)

        auth.start()
        app.state.authenticator = auth

        logger.info(
            "Sentinel service started",
            extra={
                "issuer": settings.OIDC_ISSUER_URL,
                "secret_watch_path": settings.SECRET_WATCH_PATH,
                "credentials_configured": auth.credentials_configured,
            },
        )

        yield

        logger.info("Shutting down Sentinel service")
        await auth.stop()
        if owned_client is not None:
            await owned_client.aclose()
        logger.info("Sentinel service shutdown complete")

    app = FastAPI(
        title="Sentinel",
        description="OIDC login with hot-reloadable client credentials",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.middleware("http")
    async def secure_headers(request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value
        return response

    app.include_router(auth_router)

    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        """
        Health check endpoint.

        Reports "degraded" while no client credentials are loaded or after
        the credential watcher has failed.
        """
        auth: Authenticator = request.app.state.authenticator
        healthy = auth.credentials_configured and not auth.watcher_failed
        return HealthResponse(
            status="ok" if healthy else "degraded",
            service=SERVICE_NAME,
            credentials_configured=auth.credentials_configured,
            watcher=auth.watcher.status() if auth.watcher else None,
        )

    @app.get("/", tags=["System"])
    async def root():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "endpoints": {
                "login": "/auth/login",
                "callback": "/auth/callback",
                "health": "/health",
            },
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled errors and return a standardized error response."""
        logger = logging.getLogger("sentinel.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL == "DEBUG" else None
            }
        )

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "sentinel.app.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
