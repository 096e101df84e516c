"""
FastAPI application entry point.

WHAT: Builds the marketplace HTTP app and owns the service lifecycle
WHY: Tables must exist before the first request, sweeps must stop and queued
     notifications must drain before the engine is disposed
HOW: create_app() wires middleware, error handlers and the v1 router; the
     lifespan starts and stops the Marketplace singleton around serving
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.v1.router import API_V1_PREFIX, api_router
from .core.config import settings
from .core.database import close_db, init_db
from .middleware.error_handler import register_exception_handlers
from .services.factory import get_marketplace
from .utils.logger import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the wired services before serving and wind them down afterwards."""
    services = get_marketplace()
    init_db(services.engine)
    if settings.ENABLE_BACKGROUND_SWEEPS:
        services.sweeps.start()
    logger.info(
        f"{settings.APP_NAME} v{settings.APP_VERSION} ready "
        f"(sweeps={'on' if services.sweeps.running else 'off'}, "
        f"notification workers={settings.NOTIFICATION_WORKERS})"
    )

    yield

    logger.info("Stopping sweeps and draining notifications")
    services.shutdown()
    close_db(services.engine)
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Assemble the HTTP surface around the Marketplace singleton."""
    application = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Offers, transactions, evidence and messages for a student marketplace",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(application)
    application.include_router(api_router)

    @application.get("/")
    def root():
        return {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "api": API_V1_PREFIX,
            "health": f"{API_V1_PREFIX}/health",
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "marketplace.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
