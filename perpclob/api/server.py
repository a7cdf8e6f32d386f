"""
FastAPI server for venue administration.

Usage:
    python venue_cli.py serve --port 8700
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .models import HealthResponse
from ..utils.logger import get_logger
from ..venue.exchange import Venue

logger = get_logger()


def create_app(venue: Optional[Venue] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        venue: Venue to serve. When omitted one is built from the environment
            configuration, its engines are started per config and it is shut
            down with the application.
    """
    owns_venue = venue is None
    if owns_venue:
        from ..config.config import get_config
        from ..venue.exchange import create_venue

        config = get_config()
        venue = create_venue(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_venue:
            if config.engine.start_funding_engine:
                venue.start_funding_engine()
            if config.engine.start_liquidation_monitor:
                venue.start_liquidation_monitor()
        yield
        if owns_venue:
            venue.shutdown()

    app = FastAPI(
        title="Perp CLOB Venue",
        description="Admin and market data API for the simulated perpetuals venue",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.venue = venue

    # Register API routers
    from .admin import router as admin_router
    from .markets import router as markets_router

    app.include_router(admin_router, prefix="/api")
    app.include_router(markets_router, prefix="/api")

    @app.get("/api/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(markets=app.state.venue.registry.symbols())

    return app


def run_server(
    host: str = "127.0.0.1",
    port: int = 8700,
    reload: bool = False,
) -> None:
    """
    Run the admin API server.

    Args:
        host: Host to bind to
        port: Port to listen on
        reload: Enable auto-reload for development
    """
    import uvicorn

    print(f"\n  Perp CLOB Venue")
    print(f"  Server: http://{host}:{port}")
    print(f"  API Docs: http://{host}:{port}/docs")
    print(f"  Press Ctrl+C to stop\n")

    logger.info(f"Starting admin API on {host}:{port}")
    uvicorn.run(
        "perpclob.api.server:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
        log_level="info",
    )


if __name__ == "__main__":
    run_server()
