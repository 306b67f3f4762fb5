"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from asclepius.ml.results import ClassificationResult

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from asclepius.api.routes import router
from asclepius.config import ClassifierConfig, Settings, get_settings
from asclepius.ml.classification_adapter import ClassificationAdapter
from asclepius.ml.inference import InferencePool
from asclepius.ml.model_manager import OnnxModelManager
from asclepius.ml.results import format_results

logger = logging.getLogger(__name__)


class LoggingListener:
    """Listener for the service-wide adapter; routes read the returned outcome."""

    def on_error(self, error: str) -> None:
        logger.warning("Classifier error: %s", error)

    def on_results(self, results: ClassificationResult) -> None:
        logger.info("Classified image:\n%s", format_results(results).rstrip())


def init_state(app: FastAPI, settings: Settings, model_manager: OnnxModelManager | None = None) -> None:
    """Build the model manager, adapter, and inference pool on ``app.state``."""
    app.state.settings = settings
    app.state.model_manager = model_manager or OnnxModelManager(settings)
    app.state.adapter = ClassificationAdapter(
        ClassifierConfig.from_settings(settings),
        LoggingListener(),
        app.state.model_manager,
        eager=settings.eager_load,
    )
    app.state.inference_pool = InferencePool(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Asclepius (device=%s, model=%s, threshold=%s, max_results=%s, threads=%s)",
        settings.device,
        settings.model_name,
        settings.confidence_threshold,
        settings.max_results,
        settings.num_threads,
    )

    init_state(app, settings)

    logger.info("Asclepius ready (model state: %s)", app.state.adapter.state)
    yield

    logger.info("Shutting down Asclepius")
    app.state.inference_pool.shutdown()
    app.state.adapter.close()
    logger.info("Asclepius shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Asclepius",
        description="On-device image classification with confidence scores",
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
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("asclepius.main:app", host=settings.host, port=settings.port)
