"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that sets up
logging and CORS middleware, includes the sync API router, and exposes a
health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn tilesync.main:app --reload

    Or imported and used programmatically:
        >>> from tilesync.main import app
        >>> # Use app in ASGI server
"""

import logging

import fastapi
from fastapi.middleware import cors

from tilesync.api import sync
from tilesync.core import config


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures root logging from settings, sets up CORS middleware, includes
    the sync router, and adds a health check endpoint.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = fastapi.FastAPI(title="Tile Sync", version="0.1.0")

    app.include_router(sync.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
