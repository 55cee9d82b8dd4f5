"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from snaptag.api.routes import router
from snaptag.api.state import ModelStatus
from snaptag.config import get_settings
from snaptag.ml.context import EventLoopContext
from snaptag.pipeline import ClassificationPipeline

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, stop workers on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SnapTag (device=%s, max_concurrent=%s, model=%s, top_k=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_name,
        settings.top_k,
    )

    model_status = ModelStatus()
    pipeline = ClassificationPipeline(
        model_status,
        EventLoopContext(asyncio.get_running_loop()),
        settings=settings,
    )
    app.state.model_status = model_status
    app.state.pipeline = pipeline

    if await asyncio.to_thread(pipeline.start):
        logger.info("SnapTag ready")
    yield

    logger.info("Shutting down SnapTag")
    pipeline.close()
    logger.info("SnapTag shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapTag",
        description="Asynchronous single-image classification service",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using SNAPTAG_HOST / SNAPTAG_PORT."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("snaptag.main:app", host=settings.host, port=settings.port, log_level="info")
