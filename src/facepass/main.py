"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from facepass.api.routes import router
from facepass.config import Settings, get_settings
from facepass.core.authenticator import FaceAuthenticator
from facepass.core.cache import DescriptorCache
from facepass.core.extractor import DescriptorExtractor
from facepass.core.repository import InMemoryEnrollmentRepository
from facepass.errors import ModelsUnavailableError
from facepass.ml.inference import InferencePool
from facepass.ml.lifecycle import ModelLifecycleManager
from facepass.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Build the core components and attach them to ``app.state``."""
    lifecycle = ModelLifecycleManager(OnnxModelManager(settings), settings)
    extractor = DescriptorExtractor(lifecycle, settings, DescriptorCache(settings.descriptor_cache_size))
    repository = InMemoryEnrollmentRepository()

    app.state.settings = settings
    app.state.lifecycle = lifecycle
    app.state.extractor = extractor
    app.state.repository = repository
    app.state.authenticator = FaceAuthenticator(extractor, repository, threshold=settings.match_threshold)
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
        "Starting FacePass (device=%s, max_concurrent=%s, detection=%s, landmarks=%s, recognition=%s)",
        settings.device,
        settings.max_concurrent,
        settings.face_detection_model,
        settings.face_landmark_model,
        settings.face_recognition_model,
    )

    init_state(app, settings)
    pool: InferencePool = app.state.inference_pool

    if settings.preload_models:
        extractor: DescriptorExtractor = app.state.extractor
        try:
            await pool.run(extractor.warmup)
        except ModelsUnavailableError:
            # Requests retry the load on demand.
            logger.warning("Model preload failed; continuing without loaded models")

    logger.info("FacePass ready")
    yield

    logger.info("Shutting down FacePass")
    pool.shutdown()
    app.state.lifecycle.invalidate()
    logger.info("FacePass shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FacePass",
        description="Face-biometric login core: descriptor extraction, enrollment and matching",
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
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("facepass.main:app", host=settings.host, port=settings.port)
