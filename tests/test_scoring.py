"""Tests for cosine similarity and the confidence normalizer."""

from __future__ import annotations

import math

import pytest

from detectflow.ml.confidence import normalize
from detectflow.ml.similarity import DimensionMismatchError, cosine_similarity


class TestCosineSimilarity:
    @pytest.mark.parametrize("vector", [[1.0, 0.0], [0.3, -2.5, 7.0], [1e-3] * 16])
    def test_self_similarity_is_one(self, vector: list[float]) -> None:
        assert cosine_similarity(vector, vector) == pytest.approx(1.0)

    def test_orthogonal_unit_vectors_score_zero(self) -> None:
        assert cosine_similarity([1.0, 0.0, 0.0], [0.0, 1.0, 0.0]) == pytest.approx(0.0)

    def test_opposite_vectors_score_minus_one(self) -> None:
        assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)

    def test_scale_invariant(self) -> None:
        assert cosine_similarity([1.0, 2.0, 3.0], [2.0, 4.0, 6.1]) == pytest.approx(
            cosine_similarity([10.0, 20.0, 30.0], [2.0, 4.0, 6.1])
        )

    def test_zero_vector_scores_zero(self) -> None:
        score = cosine_similarity([0.0, 0.0], [1.0, 0.0])
        assert score == 0.0
        assert not math.isnan(score)

    def test_dimension_mismatch_raises(self) -> None:
        with pytest.raises(DimensionMismatchError, match="2 != 3"):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


class TestNormalize:
    @pytest.mark.parametrize(
        "scores",
        [
            [0.21, 0.34, 0.29],
            [0.5],
            [-3.0, 0.0, 3.0, 1e3],
            [0.25, 0.25, 0.25, 0.25],
        ],
    )
    def test_output_is_a_distribution(self, scores: list[float]) -> None:
        out = normalize(scores)
        assert len(out) == len(scores)
        assert all(v >= 0.0 for v in out)
        assert sum(out) == pytest.approx(1.0, abs=1e-6)

    def test_shift_invariant(self) -> None:
        scores = [0.21, 0.34, 0.29]
        shifted = [s + 7.5 for s in scores]
        assert normalize(shifted) == pytest.approx(normalize(scores))

    def test_temperature_sharpens(self) -> None:
        scores = [0.30, 0.25]
        flat = normalize(scores, temperature=1.0)
        sharp = normalize(scores, temperature=100.0)
        assert flat[0] - flat[1] < 0.05
        assert sharp[0] > 0.99

    def test_equal_scores_are_uniform(self) -> None:
        assert normalize([0.3, 0.3, 0.3]) == pytest.approx([1 / 3] * 3)

    def test_empty_input(self) -> None:
        assert normalize([]) == []
