"""FastAPI application factory for the TMDL model tools."""

from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI

from tmdlkit import __version__
from tmdlkit.api.middleware import RequestTimingMiddleware
from tmdlkit.api.routers import diff, models
from tmdlkit.api.schemas import HealthResponse
from tmdlkit.settings import Settings


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="TMDL Model Tools",
        description="Load, edit, format, validate and diff TMDL semantic model folders.",
        version=__version__,
    )
    app.state.settings = settings

    # Middleware
    app.add_middleware(RequestTimingMiddleware)

    app.include_router(models.router, prefix="/models", tags=["models"])
    app.include_router(diff.router, prefix="/diff", tags=["diff"])

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", version=__version__)

    return app


def main() -> None:
    """Run the REST API server using settings from environment / .env file."""
    settings = Settings()

    logging.basicConfig(level=settings.log_level.upper())
    logger = logging.getLogger("tmdlkit.api")
    logger.info(
        "TMDL API Server v%s starting (host=%s, port=%d)",
        __version__, settings.api_server_host, settings.effective_port,
    )

    uvicorn.run(
        "tmdlkit.api.app:create_app",
        factory=True,
        host=settings.api_server_host,
        port=settings.effective_port,
        log_level=settings.log_level.lower(),
    )
