"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from sync_engine import __version__
from sync_engine.api.routes import alerts, health, history, jobs
from sync_engine.config import settings
from sync_engine.logging_config import setup_logging
from sync_engine.runtime import Runtime

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting sync engine...")

    runtime = Runtime(settings)
    await runtime.create_tables()
    await runtime.start()
    app.state.runtime = runtime

    yield

    logger.info("Shutting down...")
    await runtime.close()
    logger.info("Shutdown complete")


def create_app(with_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="Sync Engine",
        description="Multi-tenant integration sync pipeline",
        version=__version__,
        lifespan=lifespan if with_lifespan else None,
    )

    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/metrics", "/health"],
    )
    instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

    app.include_router(jobs.router)
    app.include_router(alerts.router)
    app.include_router(history.router)
    app.include_router(health.router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "sync_engine.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
    )
