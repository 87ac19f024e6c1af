"""Few-shot image classification by CLIP embedding similarity.

A detector's vocabulary is the set of labels attached to its training images.
The input image and every label are embedded into the same space, scored by
cosine similarity, and turned into a confidence distribution with a
temperature-scaled softmax.

Classification always produces a ranked result. When the remote pipeline
fails, every candidate label gets a synthetic confidence instead, and the
outcome is tagged ``Provenance.SYNTHETIC`` so callers can tell the two apart.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from detectflow.ml.confidence import DEFAULT_TEMPERATURE, normalize
from detectflow.ml.embedding_client import ImagePayload, TextPayload
from detectflow.ml.similarity import cosine_similarity

if TYPE_CHECKING:
    from collections.abc import Iterable

    from detectflow.ml.embedding_cache import EmbeddingCache
    from detectflow.ml.embedding_client import EmbeddingClient

logger = logging.getLogger(__name__)

UNKNOWN_LABEL: str = "unknown"
SYNTHETIC_CONFIDENCE_RANGE: tuple[float, float] = (0.6, 1.0)


class Provenance(StrEnum):
    REAL = "real"
    SYNTHETIC = "synthetic"


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


@dataclass(frozen=True)
class ClassificationOutcome:
    """Ranked predictions plus where they came from."""

    results: list[ClassificationResult]
    provenance: Provenance
    error: str | None = None

    def to_list(self) -> list[dict[str, object]]:
        return [{"label": r.label, "confidence": r.confidence} for r in self.results]


class LabelSource(Protocol):
    """Anything that can list the raw labels of a detector's training data."""

    def labels_for(self, detector_id: str) -> list[str]:
        """Return every label attached to the detector's training images."""
        ...


def normalize_labels(raw: Iterable[str]) -> list[str]:
    """Strip, lower-case, de-duplicate, and sort a label collection."""
    return sorted({label.strip().lower() for label in raw if isinstance(label, str) and label.strip()})


class ClassificationPipeline:
    """Classifies an image against the labels of one detector."""

    def __init__(
        self,
        client: EmbeddingClient,
        cache: EmbeddingCache,
        labels: LabelSource,
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._cache = cache
        self._labels = labels
        self._temperature = temperature
        self._rng = rng or random.Random()

    @property
    def model_name(self) -> str:
        return self._client.model_id

    def classify(self, image: bytes, detector_id: str, content_type: str = "image/jpeg") -> ClassificationOutcome:
        """Return labels ranked by confidence (descending). Never raises for remote failures."""
        labels = normalize_labels(self._labels.labels_for(detector_id))
        if not labels:
            logger.info("Detector %s has no labeled training images", detector_id)
            return ClassificationOutcome(
                results=[ClassificationResult(label=UNKNOWN_LABEL, confidence=0.0)],
                provenance=Provenance.REAL,
            )

        try:
            results = self._rank(image, content_type, labels)
        except Exception as exc:
            logger.warning(
                "Classification for detector %s failed, returning synthetic results: %s: %s",
                detector_id,
                type(exc).__name__,
                exc,
            )
            return ClassificationOutcome(
                results=self._synthetic(labels),
                provenance=Provenance.SYNTHETIC,
                error=f"{type(exc).__name__}: {exc}",
            )

        logger.info(
            "Classified image for detector %s: top=%s (%.2f) over %d labels",
            detector_id,
            results[0].label,
            results[0].confidence,
            len(results),
        )
        return ClassificationOutcome(results=results, provenance=Provenance.REAL)

    # -- Internal -----------------------------------------------------------

    def _rank(self, image: bytes, content_type: str, labels: list[str]) -> list[ClassificationResult]:
        image_embedding = self._client.embed(ImagePayload(data=image, content_type=content_type))
        label_embeddings = [self._label_embedding(label) for label in labels]

        scores = [cosine_similarity(image_embedding, emb) for emb in label_embeddings]
        confidences = normalize(scores, self._temperature)

        # sorted() is stable, so ties keep vocabulary order.
        order = sorted(range(len(labels)), key=lambda i: confidences[i], reverse=True)
        return [ClassificationResult(label=labels[i], confidence=round(confidences[i], 2)) for i in order]

    def _label_embedding(self, label: str) -> list[float]:
        cached = self._cache.get(label)
        if cached is not None:
            return cached
        embedding = self._client.embed(TextPayload(text=label))
        self._cache.put(label, embedding)
        return embedding

    def _synthetic(self, labels: list[str]) -> list[ClassificationResult]:
        low, high = SYNTHETIC_CONFIDENCE_RANGE
        results = [ClassificationResult(label=label, confidence=round(self._rng.uniform(low, high), 2)) for label in labels]
        return sorted(results, key=lambda r: r.confidence, reverse=True)
