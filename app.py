"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the repository and lottery service, registers the router, and runs
startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from teelottery.controllers.lottery_controller import router as lottery_router
from teelottery.repository.data_repository import DataRepository
from teelottery.services.lottery_service import LotteryProcessingService
from teelottery.utils.config import Settings, get_settings
from teelottery.utils.logger import configure_logging, get_logger


logger = get_logger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Services are attached to app.state for dependency resolution, so every
    dependency is traceable from this function.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    repository = DataRepository(settings)
    lottery_service = LotteryProcessingService(repository=repository, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.include_router(lottery_router)

    app.state.repository = repository
    app.state.lottery_service = lottery_service

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Schema must exist before seeding; seeding is skipped once members exist.
    """
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    logger.info("Startup: seeding demo club (skipped if Members table not empty)")
    repository.seed_demo_data()

    logger.info("Startup complete | database=%s", repository.database_path)


app = create_app()
