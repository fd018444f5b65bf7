"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from snaplabel.config import Settings
    from snaplabel.ml.image_classifier import ImageClassifier

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from snaplabel.api.board import PredictionBoard
from snaplabel.api.routes import router
from snaplabel.config import get_settings
from snaplabel.errors import ModelUnavailableError
from snaplabel.ml.inference import InferenceEngine
from snaplabel.ml.model_manager import OnnxModelManager
from snaplabel.ml.preprocessing import ImageNormalizer
from snaplabel.pipeline.controller import PipelineController

logger = logging.getLogger(__name__)


def init_state(
    app: FastAPI,
    settings: Settings,
    loader: Callable[[], ImageClassifier] | None = None,
) -> None:
    """Wire the pipeline onto ``app.state``.

    ``loader`` defaults to loading the configured ONNX model.
    """
    model_manager = OnnxModelManager(settings)
    engine = InferenceEngine(loader or model_manager.load_classifier)
    board = PredictionBoard()

    app.state.settings = settings
    app.state.model_source = model_manager.source
    app.state.engine = engine
    app.state.board = board
    app.state.controller = PipelineController(
        ImageNormalizer(layout=settings.input_layout),
        engine,
        sink=board,
        target_size=settings.target_size,
        on_busy_changed=board.set_busy,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    init_state(app, settings)
    logger.info(
        "Starting SnapLabel (device=%s, model=%s, input=%dx%d %s)",
        settings.device,
        app.state.model_source.origin,
        settings.input_width,
        settings.input_height,
        settings.input_layout,
    )

    engine: InferenceEngine = app.state.engine
    if settings.eager_load:
        try:
            await engine.warm_up()
        except ModelUnavailableError:
            logger.warning("Starting without a model; classification requests will fail")

    logger.info("SnapLabel ready")
    yield

    logger.info("Shutting down SnapLabel")
    controller: PipelineController = app.state.controller
    await controller.wait_idle()
    engine.shutdown()
    logger.info("SnapLabel shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapLabel",
        description="Single-image classification service with a one-run-at-a-time pipeline",
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
