"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from detectflow.api.routes import router
from detectflow.config import Settings, get_settings
from detectflow.db.store import DetectFlowStore
from detectflow.ml.embedding_cache import FileEmbeddingCache
from detectflow.ml.embedding_client import EmbeddingClient
from detectflow.ml.embedding_providers import create_embedding_provider
from detectflow.ml.image_classifier import ClassificationPipeline
from detectflow.ml.inference import InferencePool
from detectflow.ml.object_detector import create_object_detector
from detectflow.services.detection_runner import DetectionRunner
from detectflow.storage.uploads import UploadStorage

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings) -> None:
    """Build the store, inference backends, and background runner onto ``app.state``."""
    app.state.settings = settings

    store = DetectFlowStore(settings.database_path)
    store.init_schema()
    app.state.store = store
    uploads = UploadStorage(settings.upload_dir)
    app.state.uploads = uploads
    # Stored image URLs are /uploads/<subfolder>/<name>; serve them from the same root.
    app.mount("/uploads", StaticFiles(directory=uploads.root), name="uploads")

    client = EmbeddingClient(
        create_embedding_provider(settings),
        max_attempts=settings.embed_max_retries,
        default_wait_s=settings.rate_limit_default_wait_s,
        label_spacing_s=settings.label_request_spacing_s,
    )
    cache = FileEmbeddingCache(settings.embedding_cache_dir, client.model_id)
    classifier = ClassificationPipeline(client, cache, store, temperature=settings.softmax_temperature)
    app.state.classifier = classifier

    object_detector = create_object_detector(settings)
    app.state.object_detector = object_detector

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool
    app.state.detection_runner = DetectionRunner(store, inference_pool, classifier, object_detector)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting DetectFlow (provider=%s, max_concurrent=%s, database=%s)",
        settings.resolved_provider,
        settings.max_concurrent,
        settings.database_path,
    )

    init_app_state(app, settings)

    logger.info("DetectFlow ready (embedding model %s)", app.state.classifier.model_name)
    yield

    logger.info("Shutting down DetectFlow")
    app.state.inference_pool.shutdown()
    logger.info("DetectFlow shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="DetectFlow",
        description="Few-shot image classification and object detection for user-defined detectors",
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
    uvicorn.run("detectflow.main:app", host=settings.host, port=settings.port, log_level="info")
