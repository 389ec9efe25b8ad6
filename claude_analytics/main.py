"""FastAPI main application."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import settings
from .services import DashboardService
from .utils.logger import init_app_logger
from .utils.timefmt import timestamp_fields
from .api.v1 import analytics_router, websocket_router


SERVICE_NAME = "Claude Code Analytics"

# Initialize logger
logger = init_app_logger(settings)


def log_configuration(dashboard: DashboardService) -> None:
    config = dashboard.settings

    logger.info("")
    logger.info("📡 Server Configuration:")
    logger.info(f"  Host: {config.host}")
    logger.info(f"  Port: {config.port}")
    logger.info(f"  Debug: {config.debug}")
    logger.info(f"  Log Level: {config.log_level}")
    logger.info(f"  Log File: {config.log_file}")

    logger.info("")
    logger.info("📂 Conversation Logs:")
    logger.info(f"  Root: {dashboard.root_dir}")
    logger.info(f"  File Watcher: {'enabled' if config.enable_file_watcher else 'disabled'}")
    logger.info(f"  Debounce: {config.debounce_seconds}s")

    logger.info("")
    logger.info("🔍 Process Detection:")
    logger.info(f"  Command: {config.process_command}")
    logger.info(f"  Lister: {config.process_lister}")
    logger.info(f"  Cache TTL: {config.process_cache_ttl}s")
    logger.info(f"  Activity Threshold: {config.activity_threshold}s")


def create_app(dashboard: Optional[DashboardService] = None) -> FastAPI:
    """
    Build the FastAPI application around one DashboardService.

    Args:
        dashboard: Service to serve (a new one from global settings when omitted)

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for startup and shutdown events.

        Args:
            app: FastAPI application instance
        """
        service = app.state.dashboard

        # Startup
        logger.info("=" * 70)
        logger.info(f"Starting {SERVICE_NAME}...")
        logger.info("=" * 70)
        log_configuration(service)

        logger.info("")
        logger.info("📊 Analyzing conversation data...")
        await service.start()
        snapshot = service.store.snapshot()
        logger.info(f"  Conversations: {len(snapshot.conversations)}")
        logger.info(f"  Projects: {len(snapshot.active_projects)}")

        logger.info("")
        logger.info("=" * 70)
        logger.info(f"✅ {SERVICE_NAME} started successfully!")
        logger.info(f"📍 Access at: http://{service.settings.host}:{service.settings.port}")
        logger.info(f"📚 API Docs: http://{service.settings.host}:{service.settings.port}/docs")
        logger.info("=" * 70)

        yield

        # Shutdown
        logger.info("")
        logger.info("=" * 70)
        logger.info(f"Shutting down {SERVICE_NAME}...")
        logger.info("=" * 70)

        await service.stop()

        logger.info(f"✅ {SERVICE_NAME} shut down successfully")

    app = FastAPI(
        title=SERVICE_NAME,
        description="Live analytics for Claude Code conversation logs",
        version=__version__,
        lifespan=lifespan
    )
    app.state.dashboard = dashboard or DashboardService(settings)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(app.state.dashboard.monitor.http_middleware)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", **timestamp_fields()},
        )

    # Include API routers
    app.include_router(analytics_router)
    app.include_router(websocket_router)

    @app.get("/")
    async def read_root():
        """
        Service information.

        Returns:
            Service name, version and useful links
        """
        return {
            "message": f"{SERVICE_NAME} API",
            "version": __version__,
            "docs": "/docs",
            "health": "/api/system/health",
            "websocket": "/ws",
        }

    @app.get("/health")
    async def health():
        """
        Simple health check endpoint.

        Returns:
            Health status
        """
        return {
            "status": "healthy",
            "service": SERVICE_NAME
        }

    @app.get("/api/version")
    async def version():
        return {"name": "claude-analytics", "version": __version__, "description": app.description}

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "claude_analytics.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )


if __name__ == "__main__":
    run()
