"""Pydantic request/response schemas for the DetectFlow API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class DetectorCreate(BaseModel):
    """Body for creating a detector."""

    name: str = Field(min_length=1)
    description: str | None = None
    user_id: str = Field(min_length=1)


class Detector(BaseModel):
    id: str
    name: str
    description: str | None = None
    user_id: str
    created_at: str
    image_count: int = 0
    detection_count: int = 0


class DetectorResponse(BaseModel):
    detector: Detector


class DetectorsResponse(BaseModel):
    detectors: list[Detector]


class TrainingImage(BaseModel):
    """An uploaded training image and its labels."""

    id: str
    detector_id: str
    image_url: str
    labels: list[str]
    created_at: str


class TrainingImageResponse(BaseModel):
    image: TrainingImage


class TrainingImagesResponse(BaseModel):
    images: list[TrainingImage]


class Detection(BaseModel):
    """A classification or object detection request and, once done, its results."""

    id: str
    detector_id: str
    input_image_url: str
    mode: Literal["classify", "objects"]
    status: Literal["processing", "complete", "failed"]
    results: list[dict[str, Any]] | None = None
    provenance: Literal["real", "synthetic"] | None = Field(
        default=None,
        description="'real' for model output, 'synthetic' when the fallback produced the results",
    )
    error: str | None = Field(
        default=None,
        description="Why synthetic results were returned or why the detection failed",
    )
    processing_time_ms: int | None = None
    processed_at: str | None = None
    created_at: str


class DetectionResponse(BaseModel):
    detection: Detection


class DetectionsResponse(BaseModel):
    detections: list[Detection]


class DetectionAccepted(BaseModel):
    id: str
    status: Literal["processing"] = "processing"


class DetectionAcceptedResponse(BaseModel):
    detection: DetectionAccepted


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    provider: str
    embedding_model: str
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an inference model."""

    name: str
    task: str = Field(description="Model task: 'embedding' or 'object_detection'")
    provider: str
    status: str = Field(description="Model status: 'active', 'available', or 'requires_token'")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
