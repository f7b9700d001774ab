# =============================================================================
# Application Entry Point — FastAPI App Assembly
# =============================================================================
#
# Builds the FastAPI app, configures logging from settings, and mounts the
# routers. Run with:
#
#   uvicorn app.main:app --reload
#
# DESIGN DECISION: create_app() factory plus a module-level `app`.
# Tests build a fresh app per test class and override dependencies on it;
# uvicorn imports the module-level instance.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api import chat, orchestrate, tasks
from app.config import settings
from app.models.responses import HealthResponse

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if settings.task_store_backend == "database":
        from app.db.engine import init_models

        await init_models()
        logger.info("Database tables ready")
    yield


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Legal research assistant: plans and runs specialised capabilities "
            "and streams cited, reranked research answers."
        ),
        lifespan=lifespan,
    )
    app.include_router(orchestrate.router)
    app.include_router(tasks.router)
    app.include_router(chat.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(version=settings.app_version, service=settings.app_name)

    return app


app = create_app()
