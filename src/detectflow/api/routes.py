"""API route definitions."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Annotated, Literal

from fastapi import APIRouter, BackgroundTasks, Depends, Form, HTTPException, Request, UploadFile, status

from detectflow.api.middleware import verify_api_key
from detectflow.api.schemas import (
    DetectionAcceptedResponse,
    DetectionResponse,
    DetectionsResponse,
    DetectorCreate,
    DetectorResponse,
    DetectorsResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    TrainingImageResponse,
    TrainingImagesResponse,
)

if TYPE_CHECKING:
    from detectflow.config import Settings
    from detectflow.db.store import DetectFlowStore
    from detectflow.ml.image_classifier import ClassificationPipeline
    from detectflow.ml.inference import InferencePool
    from detectflow.ml.object_detector import ObjectDetector
    from detectflow.services.detection_runner import DetectionRunner
    from detectflow.storage.uploads import UploadStorage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", dependencies=[Depends(verify_api_key)])

_NOT_FOUND = {status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}}

# Starlette renamed the 413 constant; the literal code works across versions.
_CONTENT_TOO_LARGE = 413


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_store(request: Request) -> DetectFlowStore:
    store: DetectFlowStore = request.app.state.store
    return store


def _get_uploads(request: Request) -> UploadStorage:
    uploads: UploadStorage = request.app.state.uploads
    return uploads


def _get_runner(request: Request) -> DetectionRunner:
    runner: DetectionRunner = request.app.state.detection_runner
    return runner


def _require_detector(store: DetectFlowStore, detector_id: str) -> None:
    if store.get_detector(detector_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Detector not found")


async def _read_image(image: UploadFile | None, max_size: int) -> bytes:
    if image is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="image file is required")
    # One byte past the limit is enough to reject; larger uploads are never fully buffered.
    data = await image.read(max_size + 1)
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="image file is empty")
    if len(data) > max_size:
        raise HTTPException(
            status_code=_CONTENT_TOO_LARGE,
            detail=f"image exceeds the {max_size} byte limit",
        )
    return data


def _parse_labels(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        labels = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="labels must be a JSON array of strings",
        ) from None
    if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="labels must be a JSON array of strings")
    return labels


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------


@router.get("/detectors", response_model=DetectorsResponse, summary="List detectors")
async def list_detectors(request: Request) -> DetectorsResponse:
    """Return all detectors, newest first."""
    store = _get_store(request)
    return DetectorsResponse.model_validate({"detectors": store.list_detectors()})


@router.post(
    "/detectors",
    response_model=DetectorResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a detector",
)
async def create_detector(request: Request, body: DetectorCreate) -> DetectorResponse:
    store = _get_store(request)
    detector = store.create_detector(name=body.name, user_id=body.user_id, description=body.description)
    return DetectorResponse.model_validate({"detector": detector})


# ---------------------------------------------------------------------------
# Training images
# ---------------------------------------------------------------------------


@router.post(
    "/detectors/{detector_id}/images",
    response_model=TrainingImageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        _CONTENT_TOO_LARGE: {"model": ErrorResponse},
        **_NOT_FOUND,
    },
    summary="Upload a labeled training image",
)
async def upload_training_image(
    request: Request,
    detector_id: str,
    image: UploadFile | None = None,
    labels: Annotated[str | None, Form(description="JSON array of label strings")] = None,
) -> TrainingImageResponse:
    settings = _get_settings(request)
    store = _get_store(request)

    data = await _read_image(image, settings.max_file_size)
    parsed_labels = _parse_labels(labels)
    _require_detector(store, detector_id)

    image_url = _get_uploads(request).save(image.filename if image else None, data, "training")
    record = store.add_training_image(detector_id, image_url, parsed_labels)
    logger.info("Added training image to detector %s with labels %s", detector_id, parsed_labels)
    return TrainingImageResponse.model_validate({"image": record})


@router.get(
    "/detectors/{detector_id}/images",
    response_model=TrainingImagesResponse,
    summary="List training images",
)
async def list_training_images(request: Request, detector_id: str) -> TrainingImagesResponse:
    store = _get_store(request)
    return TrainingImagesResponse.model_validate({"images": store.list_training_images(detector_id)})


# ---------------------------------------------------------------------------
# Detections
# ---------------------------------------------------------------------------


@router.post(
    "/detectors/{detector_id}/detect",
    response_model=DetectionAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        _CONTENT_TOO_LARGE: {"model": ErrorResponse},
        **_NOT_FOUND,
    },
    summary="Submit an image for classification or object detection",
)
async def detect(
    request: Request,
    background_tasks: BackgroundTasks,
    detector_id: str,
    image: UploadFile | None = None,
    mode: Annotated[Literal["classify", "objects"], Form()] = "classify",
) -> DetectionAcceptedResponse:
    """Accept the image and process it in the background. Poll ``GET /api/detections/{id}``."""
    settings = _get_settings(request)
    store = _get_store(request)

    data = await _read_image(image, settings.max_file_size)
    _require_detector(store, detector_id)

    input_url = _get_uploads(request).save(image.filename if image else None, data, "detections")
    detection = store.create_detection(detector_id, input_url, mode)

    content_type = (image.content_type if image else None) or "image/jpeg"
    background_tasks.add_task(_get_runner(request).run, detection["id"], detector_id, data, content_type, mode)

    return DetectionAcceptedResponse.model_validate({"detection": {"id": detection["id"], "status": "processing"}})


@router.get(
    "/detectors/{detector_id}/detections",
    response_model=DetectionsResponse,
    summary="List detections for a detector",
)
async def list_detections(request: Request, detector_id: str) -> DetectionsResponse:
    store = _get_store(request)
    return DetectionsResponse.model_validate({"detections": store.list_detections(detector_id)})


@router.get(
    "/detections/{detection_id}",
    response_model=DetectionResponse,
    responses=_NOT_FOUND,
    summary="Get a detection result",
)
async def get_detection(request: Request, detection_id: str) -> DetectionResponse:
    """Return a detection; poll until ``status`` leaves ``processing``."""
    detection = _get_store(request).get_detection(detection_id)
    if detection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Detection not found")
    return DetectionResponse.model_validate({"detection": detection})


# ---------------------------------------------------------------------------
# Service info
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool: InferencePool = request.app.state.inference_pool
    classifier: ClassificationPipeline = request.app.state.classifier
    return HealthResponse(
        status="ok",
        provider=settings.resolved_provider,
        embedding_model=classifier.model_name,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get("/models", response_model=ModelsResponse, summary="List inference models")
async def list_models(request: Request) -> ModelsResponse:
    """Return the embedding and detection models and their status under the current configuration."""
    settings = _get_settings(request)
    detector: ObjectDetector = request.app.state.object_detector
    provider = settings.resolved_provider

    tokens = {
        "replicate": settings.replicate_api_token,
        "huggingface": settings.hf_api_token,
        "mock": "mock",
    }
    entries = [
        ("andreasjansson/clip-features", "embedding", "replicate", provider == "replicate"),
        (settings.embedding_model, "embedding", "huggingface", provider == "huggingface"),
        ("mock-clip-512", "embedding", "mock", provider == "mock"),
        (settings.detection_model, "object_detection", "huggingface", detector.model_name == settings.detection_model),
        ("mock-detector", "object_detection", "mock", detector.model_name == "mock-detector"),
    ]

    models: list[ModelInfo] = []
    for name, task, model_provider, active in entries:
        if active:
            model_status = "active"
        elif not tokens[model_provider]:
            model_status = "requires_token"
        else:
            model_status = "available"
        models.append(ModelInfo(name=name, task=task, provider=model_provider, status=model_status))

    return ModelsResponse(models=models)
