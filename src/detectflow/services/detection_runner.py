"""Background execution of detection requests.

The detect endpoint records a ``processing`` detection and returns at once;
this runner does the work afterwards and writes the outcome for the polling
endpoint. A run cannot be cancelled once started.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from detectflow.db.store import DetectFlowStore
    from detectflow.ml.image_classifier import ClassificationPipeline
    from detectflow.ml.inference import InferencePool
    from detectflow.ml.object_detector import ObjectDetector

logger = logging.getLogger(__name__)

DetectionMode = Literal["classify", "objects"]


class DetectionRunner:
    """Runs classification or object detection for a stored detection record."""

    def __init__(
        self,
        store: DetectFlowStore,
        pool: InferencePool,
        classifier: ClassificationPipeline,
        object_detector: ObjectDetector,
    ) -> None:
        self._store = store
        self._pool = pool
        self._classifier = classifier
        self._object_detector = object_detector

    async def run(
        self,
        detection_id: str,
        detector_id: str,
        image: bytes,
        content_type: str,
        mode: DetectionMode,
    ) -> None:
        start = time.perf_counter()
        try:
            if mode == "objects":
                objects = await self._pool.run(self._object_detector.detect, image)
                results, provenance, error = objects.to_list(), objects.provenance, objects.error
            else:
                outcome = await self._pool.run(self._classifier.classify, image, detector_id, content_type)
                results, provenance, error = outcome.to_list(), outcome.provenance, outcome.error

            elapsed_ms = int((time.perf_counter() - start) * 1000)
            self._store.complete_detection(detection_id, results, str(provenance), elapsed_ms, error=error)
        except Exception as exc:
            logger.exception("Detection %s failed", detection_id)
            self._store.fail_detection(detection_id, error=f"{type(exc).__name__}: {exc}")
            return

        logger.info(
            "Detection %s complete (mode=%s, provenance=%s, %d ms)",
            detection_id,
            mode,
            provenance,
            elapsed_ms,
        )
