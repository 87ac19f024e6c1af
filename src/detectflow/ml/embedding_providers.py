"""Embedding provider implementations: Replicate, HuggingFace, and a local mock."""

from __future__ import annotations

import base64
import hashlib
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx
import numpy as np

from detectflow.ml.embedding_client import (
    EmbeddingError,
    RateLimitedError,
    RemoteUnavailableError,
    parse_retry_after,
)

if TYPE_CHECKING:
    from detectflow.config import Settings
    from detectflow.ml.embedding_client import EmbeddingProvider

logger = logging.getLogger(__name__)

MOCK_EMBEDDING_DIM: int = 512

_PREDICTION_POLL_INTERVAL_S: float = 1.0
_PREDICTION_TERMINAL = {"succeeded", "failed", "canceled"}


def _retry_hint(response: httpx.Response) -> float | None:
    header = response.headers.get("retry-after")
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    return parse_retry_after(response.text)


def _to_vector(data: Any) -> list[float]:
    """Flatten a provider response into a single embedding.

    Token-level outputs (2-D or deeper) are mean-pooled over the leading axes.
    """
    arr = np.asarray(data, dtype=np.float64)
    if arr.ndim == 0 or arr.size == 0:
        raise RemoteUnavailableError("Provider returned no embedding values")
    if arr.ndim > 1:
        arr = arr.reshape(-1, arr.shape[-1]).mean(axis=0)
    return arr.tolist()


# ---------------------------------------------------------------------------
# Replicate
# ---------------------------------------------------------------------------


class ReplicateEmbeddingProvider:
    """CLIP features through the Replicate predictions API."""

    def __init__(
        self,
        api_token: str,
        version: str,
        *,
        base_url: str = "https://api.replicate.com/v1",
        timeout: float = 60.0,
        model_name: str = "andreasjansson/clip-features",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._version = version
        self._model_name = model_name
        self._timeout = timeout
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Prefer": "wait",
            },
            transport=transport,
        )

    @property
    def model_id(self) -> str:
        return f"{self._model_name}:{self._version[:12]}"

    def embed_image(self, image: bytes, content_type: str) -> list[float]:
        data_uri = f"data:{content_type};base64,{base64.b64encode(image).decode('ascii')}"
        return self._predict(data_uri)

    def embed_text(self, text: str) -> list[float]:
        return self._predict(text)

    def close(self) -> None:
        self._client.close()

    # -- Internal -----------------------------------------------------------

    def _predict(self, inputs: str) -> list[float]:
        try:
            response = self._client.post(
                "/predictions",
                json={"version": self._version, "input": {"inputs": inputs}},
            )
        except httpx.HTTPError as exc:
            raise RemoteUnavailableError(f"Replicate request failed: {exc}") from exc

        prediction = self._check(response)
        prediction = self._wait_for_completion(prediction)

        if prediction.get("status") != "succeeded":
            raise RemoteUnavailableError(f"Replicate prediction {prediction.get('status')}: {prediction.get('error')}")

        output = prediction.get("output") or []
        if not output:
            raise RemoteUnavailableError("Replicate prediction returned no output")
        return _to_vector(output[0]["embedding"])

    def _check(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
            raise RateLimitedError(f"Replicate rate limit: {response.text}", retry_after=_retry_hint(response))
        if response.is_error:
            raise RemoteUnavailableError(f"Replicate returned {response.status_code}: {response.text}")
        prediction: dict[str, Any] = response.json()
        return prediction

    def _wait_for_completion(self, prediction: dict[str, Any]) -> dict[str, Any]:
        deadline = time.monotonic() + self._timeout
        while prediction.get("status") not in _PREDICTION_TERMINAL:
            if time.monotonic() > deadline:
                raise RemoteUnavailableError(f"Replicate prediction {prediction.get('id')} did not finish in time")
            time.sleep(_PREDICTION_POLL_INTERVAL_S)
            get_url = prediction.get("urls", {}).get("get")
            if not get_url:
                raise RemoteUnavailableError("Replicate prediction has no polling URL")
            try:
                prediction = self._check(self._client.get(get_url))
            except httpx.HTTPError as exc:
                raise RemoteUnavailableError(f"Replicate polling failed: {exc}") from exc
        return prediction


# ---------------------------------------------------------------------------
# HuggingFace
# ---------------------------------------------------------------------------


class HuggingFaceEmbeddingProvider:
    """CLIP embeddings from a HuggingFace inference endpoint."""

    def __init__(
        self,
        api_token: str,
        model: str,
        *,
        base_url: str = "https://router.huggingface.co/hf-inference/models",
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._model = model
        self._url = f"{base_url.rstrip('/')}/{model}"
        self._client = httpx.Client(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_token}"},
            transport=transport,
        )

    @property
    def model_id(self) -> str:
        return self._model

    def embed_image(self, image: bytes, content_type: str) -> list[float]:
        return self._post(content=image, headers={"Content-Type": content_type})

    def embed_text(self, text: str) -> list[float]:
        return self._post(json={"inputs": text})

    def close(self) -> None:
        self._client.close()

    def _post(self, **kwargs: Any) -> list[float]:
        try:
            response = self._client.post(self._url, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteUnavailableError(f"HuggingFace request failed: {exc}") from exc

        if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
            raise RateLimitedError(f"HuggingFace rate limit: {response.text}", retry_after=_retry_hint(response))
        if response.is_error:
            raise RemoteUnavailableError(f"HuggingFace returned {response.status_code}: {response.text}")
        return _to_vector(response.json())


# ---------------------------------------------------------------------------
# Mock
# ---------------------------------------------------------------------------


class MockEmbeddingProvider:
    """Deterministic unit vectors derived from a hash of the input. No network."""

    def __init__(self, dim: int = MOCK_EMBEDDING_DIM) -> None:
        self._dim = dim

    @property
    def model_id(self) -> str:
        return f"mock-clip-{self._dim}"

    def embed_image(self, image: bytes, content_type: str) -> list[float]:
        return self._vector(b"image:" + image)

    def embed_text(self, text: str) -> list[float]:
        return self._vector(b"text:" + text.encode("utf-8"))

    def _vector(self, seed_bytes: bytes) -> list[float]:
        seed = int.from_bytes(hashlib.sha256(seed_bytes).digest()[:8], "big")
        vec = np.random.default_rng(seed).standard_normal(self._dim)
        return (vec / np.linalg.norm(vec)).tolist()


def create_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Build the embedding provider selected by configuration."""
    provider = settings.resolved_provider

    if provider == "replicate":
        if not settings.replicate_api_token:
            raise EmbeddingError("DETECTFLOW_REPLICATE_API_TOKEN is required for the replicate provider")
        return ReplicateEmbeddingProvider(
            settings.replicate_api_token,
            settings.replicate_clip_version,
            base_url=settings.replicate_api_url,
            timeout=settings.http_timeout_s,
        )

    if provider == "huggingface":
        if not settings.hf_api_token:
            raise EmbeddingError("DETECTFLOW_HF_API_TOKEN is required for the huggingface provider")
        return HuggingFaceEmbeddingProvider(
            settings.hf_api_token,
            settings.embedding_model,
            base_url=settings.hf_inference_url,
            timeout=settings.http_timeout_s,
        )

    logger.warning("No inference API token configured, using mock embeddings")
    return MockEmbeddingProvider()
