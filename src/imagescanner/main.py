"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from imagescanner.config import Settings

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from imagescanner.api.middleware import install_error_handlers
from imagescanner.api.routes import router as api_router
from imagescanner.api.ui import router as ui_router
from imagescanner.config import get_settings
from imagescanner.ml.acquisition import ClassifierProvider
from imagescanner.ml.inference import InferencePool
from imagescanner.ml.labels import LabelTable
from imagescanner.ml.model_manager import OnnxModelManager
from imagescanner.session import SessionStore

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> ClassifierProvider:
    """Attach settings and long-lived services to ``app.state``."""
    model_manager = OnnxModelManager(settings)
    labels = LabelTable(settings.labels_url, path=settings.labels_path, timeout=settings.fetch_timeout)
    provider = ClassifierProvider(settings, model_manager, labels)

    app.state.settings = settings
    app.state.model_manager = model_manager
    app.state.classifier_provider = provider
    app.state.inference_pool = InferencePool(settings)
    app.state.session_store = SessionStore(settings)
    return provider


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: start model acquisition, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting ImageScanner (device=%s, model=%s, demo_mode=%s, max_concurrent=%s)",
        settings.device,
        settings.model_name,
        settings.demo_mode,
        settings.max_concurrent,
    )

    provider = init_state(app, settings)
    # The UI is served while the model downloads; analysis waits for the outcome.
    acquisition = asyncio.create_task(provider.acquire(), name="model-acquisition")

    logger.info("ImageScanner accepting requests")
    yield

    logger.info("Shutting down ImageScanner")
    if not acquisition.done():
        acquisition.cancel()
        with suppress(asyncio.CancelledError):
            await acquisition
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("ImageScanner shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ImageScanner",
        description="Browser image classifier backed by a pretrained ONNX model",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    install_error_handlers(application)
    application.include_router(ui_router)
    application.include_router(api_router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "imagescanner.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
