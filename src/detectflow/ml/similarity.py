"""Cosine similarity between image and label embeddings."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence


class DimensionMismatchError(ValueError):
    """Raised when two embeddings do not share the same dimensionality."""

    def __init__(self, left: int, right: int) -> None:
        super().__init__(f"Embedding dimensions differ: {left} != {right}")
        self.left = left
        self.right = right


def cosine_similarity(image_embedding: Sequence[float], label_embedding: Sequence[float]) -> float:
    """Return the cosine of the angle between two embeddings.

    A zero-magnitude vector has no direction, so its similarity to anything is 0.0.

    Raises:
        DimensionMismatchError: If the vectors have different lengths.
    """
    a = np.asarray(image_embedding, dtype=np.float64).ravel()
    b = np.asarray(label_embedding, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise DimensionMismatchError(a.shape[0], b.shape[0])

    norm = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)
