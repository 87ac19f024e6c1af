"""Object detection through the HuggingFace Inference API, with a mock fallback.

HuggingFace answers 503 while a cold model is loading. That case is retried a
bounded number of times; every other failure falls back to mock detections.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import InferenceClient
from huggingface_hub.errors import HfHubHTTPError

from detectflow.ml.image_classifier import Provenance

if TYPE_CHECKING:
    from collections.abc import Callable

    from detectflow.config import Settings

logger = logging.getLogger(__name__)

MOCK_LABELS: tuple[str, ...] = ("crack", "scratch", "dent", "corrosion", "good")

_MODEL_LOADING_STATUS = 503


@dataclass(frozen=True)
class BoundingBox:
    """Pixel-space box: top-left corner plus size."""

    x: float
    y: float
    w: float
    h: float


@dataclass(frozen=True)
class ObjectDetection:
    label: str
    confidence: float
    bbox: BoundingBox


@dataclass(frozen=True)
class ObjectDetectionOutcome:
    detections: list[ObjectDetection]
    provenance: Provenance
    error: str | None = None

    def to_list(self) -> list[dict[str, object]]:
        return [
            {
                "label": d.label,
                "confidence": d.confidence,
                "bbox": {"x": d.bbox.x, "y": d.bbox.y, "w": d.bbox.w, "h": d.bbox.h},
            }
            for d in self.detections
        ]


class ObjectDetector(Protocol):
    """Protocol for object detection backends."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def detect(self, image: bytes) -> ObjectDetectionOutcome:
        """Detect objects in raw image bytes. Never raises for remote failures."""
        ...


def mock_detections(rng: random.Random) -> list[ObjectDetection]:
    """Return 1-3 random but plausible detections."""
    return [
        ObjectDetection(
            label=rng.choice(MOCK_LABELS),
            confidence=round(rng.uniform(0.6, 1.0), 2),
            bbox=BoundingBox(
                x=rng.randrange(200),
                y=rng.randrange(200),
                w=rng.randrange(100) + 50,
                h=rng.randrange(100) + 50,
            ),
        )
        for _ in range(rng.randint(1, 3))
    ]


class MockObjectDetector:
    """Random detections, used when no HuggingFace token is configured."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    @property
    def model_name(self) -> str:
        return "mock-detector"

    def detect(self, image: bytes) -> ObjectDetectionOutcome:
        return ObjectDetectionOutcome(detections=mock_detections(self._rng), provenance=Provenance.SYNTHETIC)


class HuggingFaceObjectDetector:
    """DETR-style object detection via ``huggingface_hub.InferenceClient``."""

    def __init__(
        self,
        client: InferenceClient,
        model: str,
        *,
        loading_retries: int = 3,
        loading_wait_s: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._loading_retries = loading_retries
        self._loading_wait_s = loading_wait_s
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def model_name(self) -> str:
        return self._model

    def detect(self, image: bytes) -> ObjectDetectionOutcome:
        attempts = self._loading_retries + 1
        attempt = 0
        while True:
            attempt += 1
            try:
                elements = self._client.object_detection(image, model=self._model)
            except HfHubHTTPError as exc:
                status = exc.response.status_code if exc.response is not None else None
                if status == _MODEL_LOADING_STATUS and attempt < attempts:
                    logger.info(
                        "%s is loading, retrying in %.0fs (attempt %d/%d)",
                        self._model,
                        self._loading_wait_s,
                        attempt,
                        attempts,
                    )
                    self._sleep(self._loading_wait_s)
                    continue
                return self._fallback(exc)
            except Exception as exc:
                return self._fallback(exc)

            detections = [
                ObjectDetection(
                    label=el.label,
                    confidence=round(float(el.score), 2),
                    bbox=BoundingBox(
                        x=el.box.xmin,
                        y=el.box.ymin,
                        w=el.box.xmax - el.box.xmin,
                        h=el.box.ymax - el.box.ymin,
                    ),
                )
                for el in elements
            ]
            logger.info("%s found %d objects", self._model, len(detections))
            return ObjectDetectionOutcome(detections=detections, provenance=Provenance.REAL)

    def _fallback(self, exc: Exception) -> ObjectDetectionOutcome:
        logger.warning("Object detection failed, returning mock detections: %s: %s", type(exc).__name__, exc)
        return ObjectDetectionOutcome(
            detections=mock_detections(self._rng),
            provenance=Provenance.SYNTHETIC,
            error=f"{type(exc).__name__}: {exc}",
        )


def create_object_detector(settings: Settings) -> ObjectDetector:
    """Build the object detector selected by configuration."""
    if not settings.hf_api_token or settings.inference_provider == "mock":
        logger.warning("No HuggingFace token configured, using mock object detection")
        return MockObjectDetector()
    client = InferenceClient(token=settings.hf_api_token, timeout=settings.http_timeout_s)
    return HuggingFaceObjectDetector(
        client,
        settings.detection_model,
        loading_retries=settings.model_loading_retries,
        loading_wait_s=settings.model_loading_wait_s,
    )
