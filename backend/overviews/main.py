"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that configures
structured logging, sets up CORS middleware, includes the overview and tile
grid routers, and exposes a health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn overviews.main:app --reload

    Or imported and used programmatically:
        >>> from overviews.main import app
        >>> # Use app in ASGI server
"""

import fastapi
from fastapi.middleware import cors

from overviews.api import overviews, tiles
from overviews.core import config
from overviews.core import logging as core_logging


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures logging, includes the overview and tile routers, and adds a
    health check endpoint. CORS origins are configured from settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    core_logging.configure_logging(settings)
    app = fastapi.FastAPI(title="Overview Pyramid", version="0.1.0")

    app.include_router(overviews.router)
    app.include_router(tiles.router)

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
