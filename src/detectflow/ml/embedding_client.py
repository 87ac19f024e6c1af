"""Embedding client: retry and rate-limit handling around an embedding provider.

Architecture:
    ClassificationPipeline -> EmbeddingClient (retries, spacing) -> EmbeddingProvider (one HTTP call)

Rate-limit responses are retried a bounded number of times, sleeping the
provider's advertised reset hint when one is present. Label (text) requests
are additionally spaced apart so that fetching a detector's whole vocabulary
does not trip the provider's limit in the first place.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS: int = 3

_RETRY_HINT_PATTERNS = (
    re.compile(r"retry[_-]?after\"?\s*[:=]\s*\"?(\d+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"retry (?:again )?(?:in|after)\s+~?(\d+(?:\.\d+)?)\s*s", re.IGNORECASE),
    re.compile(r"(?:resets|available) in\s+~?(\d+(?:\.\d+)?)\s*s", re.IGNORECASE),
)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImagePayload:
    """Raw image bytes to embed."""

    data: bytes
    content_type: str = "image/jpeg"


@dataclass(frozen=True)
class TextPayload:
    """A label string to embed."""

    text: str


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class EmbeddingError(RuntimeError):
    """Base class for embedding failures."""


class RateLimitedError(EmbeddingError):
    """The provider rejected the request because of its rate limit."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RemoteUnavailableError(EmbeddingError):
    """The provider failed in a way that is not worth retrying."""


class MaxRetriesExceededError(EmbeddingError):
    """Rate-limit retries were exhausted."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Embedding request still rate limited after {attempts} attempts")
        self.attempts = attempts


def parse_retry_after(message: str | None) -> float | None:
    """Extract a retry delay in seconds from a provider error message."""
    if not message:
        return None
    for pattern in _RETRY_HINT_PATTERNS:
        match = pattern.search(message)
        if match:
            return float(match.group(1))
    return None


# ---------------------------------------------------------------------------
# Provider protocol
# ---------------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    """A single remote embedding endpoint. One call = one request, no retries."""

    @property
    def model_id(self) -> str:
        """Return the upstream model identifier."""
        ...

    def embed_image(self, image: bytes, content_type: str) -> list[float]:
        """Embed an image.

        Raises:
            RateLimitedError: On a rate-limit response.
            RemoteUnavailableError: On any other failure.
        """
        ...

    def embed_text(self, text: str) -> list[float]:
        """Embed a text string (same embedding space as images)."""
        ...


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class EmbeddingClient:
    """Embeds images and labels through a provider with bounded rate-limit retries."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        default_wait_s: float = 10.0,
        label_spacing_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._provider = provider
        self._max_attempts = max_attempts
        self._default_wait_s = default_wait_s
        self._label_spacing_s = label_spacing_s
        self._sleep = sleep
        self._clock = clock
        self._last_label_request: float | None = None
        # Shared by every inference worker thread; label requests go out one at a time.
        self._label_lock = threading.Lock()

    @property
    def model_id(self) -> str:
        return self._provider.model_id

    def embed(self, payload: ImagePayload | TextPayload) -> list[float]:
        """Return the embedding for an image or a label.

        Raises:
            MaxRetriesExceededError: If every attempt was rate limited.
            EmbeddingError: For any other provider failure (not retried).
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                vector = self._send(payload)
            except RateLimitedError as exc:
                if attempt >= self._max_attempts:
                    raise MaxRetriesExceededError(attempt) from exc
                wait = exc.retry_after if exc.retry_after is not None else self._default_wait_s
                logger.warning(
                    "Rate limited by %s (attempt %d/%d), retrying in %.1fs",
                    self.model_id,
                    attempt,
                    self._max_attempts,
                    wait,
                )
                self._sleep(wait)
                continue

            if not vector:
                raise RemoteUnavailableError(f"{self.model_id} returned an empty embedding")
            return vector

    # -- Internal -----------------------------------------------------------

    def _send(self, payload: ImagePayload | TextPayload) -> list[float]:
        if isinstance(payload, ImagePayload):
            return self._provider.embed_image(payload.data, payload.content_type)

        with self._label_lock:
            self._wait_for_label_slot()
            try:
                return self._provider.embed_text(payload.text)
            finally:
                self._last_label_request = self._clock()

    def _wait_for_label_slot(self) -> None:
        if self._last_label_request is None or self._label_spacing_s <= 0:
            return
        elapsed = self._clock() - self._last_label_request
        if elapsed < self._label_spacing_s:
            self._sleep(self._label_spacing_s - elapsed)
