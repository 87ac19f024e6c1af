"""Tests for the retrying embedding client and the embedding providers."""

from __future__ import annotations

import json
import threading
import time

import httpx
import pytest

from detectflow.config import Settings
from detectflow.ml.embedding_client import (
    EmbeddingClient,
    ImagePayload,
    MaxRetriesExceededError,
    RateLimitedError,
    RemoteUnavailableError,
    TextPayload,
    parse_retry_after,
)
from detectflow.ml.embedding_providers import (
    HuggingFaceEmbeddingProvider,
    MockEmbeddingProvider,
    ReplicateEmbeddingProvider,
    create_embedding_provider,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ScriptedProvider:
    """Provider that replays a script of results or exceptions."""

    def __init__(self, *script: list[float] | Exception) -> None:
        self._script = list(script)
        self.calls: list[str] = []

    @property
    def model_id(self) -> str:
        return "scripted"

    def embed_image(self, image: bytes, content_type: str) -> list[float]:
        self.calls.append("image")
        return self._next()

    def embed_text(self, text: str) -> list[float]:
        self.calls.append(f"text:{text}")
        return self._next()

    def _next(self) -> list[float]:
        item = self._script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _client(provider: ScriptedProvider, clock: FakeClock, **kwargs: float) -> EmbeddingClient:
    return EmbeddingClient(provider, sleep=clock.sleep, clock=clock, **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Retry hint parsing
# ---------------------------------------------------------------------------


class TestParseRetryAfter:
    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ('{"detail": "Request was throttled.", "retry_after": 7}', 7.0),
            ("Request was throttled. Your rate limit resets in ~5s.", 5.0),
            ("Rate limit exceeded, retry after 2.5s", 2.5),
            ("Retry-After: 12", 12.0),
        ],
    )
    def test_extracts_hint(self, message: str, expected: float) -> None:
        assert parse_retry_after(message) == expected

    @pytest.mark.parametrize("message", [None, "", "Internal Server Error"])
    def test_no_hint(self, message: str | None) -> None:
        assert parse_retry_after(message) is None


# ---------------------------------------------------------------------------
# EmbeddingClient
# ---------------------------------------------------------------------------


class TestEmbeddingClient:
    def test_success_on_first_attempt(self) -> None:
        provider = ScriptedProvider([0.1, 0.2])
        clock = FakeClock()

        assert _client(provider, clock).embed(ImagePayload(b"img")) == [0.1, 0.2]
        assert provider.calls == ["image"]
        assert clock.sleeps == []

    def test_rate_limit_then_success_uses_hint(self) -> None:
        provider = ScriptedProvider(RateLimitedError("slow down", retry_after=4.0), [1.0])
        clock = FakeClock()

        assert _client(provider, clock).embed(ImagePayload(b"img")) == [1.0]
        assert provider.calls == ["image", "image"]
        assert clock.sleeps == [4.0]

    def test_rate_limit_without_hint_uses_default_wait(self) -> None:
        provider = ScriptedProvider(RateLimitedError("slow down"), [1.0])
        clock = FakeClock()

        _client(provider, clock, default_wait_s=10.0).embed(ImagePayload(b"img"))

        assert clock.sleeps == [10.0]

    def test_exhausted_retries_raise(self) -> None:
        provider = ScriptedProvider(*(RateLimitedError("slow down", retry_after=1.0) for _ in range(3)))
        clock = FakeClock()

        with pytest.raises(MaxRetriesExceededError) as exc_info:
            _client(provider, clock, max_attempts=3).embed(ImagePayload(b"img"))

        assert exc_info.value.attempts == 3
        assert len(provider.calls) == 3
        assert clock.sleeps == [1.0, 1.0]

    def test_other_errors_are_not_retried(self) -> None:
        provider = ScriptedProvider(RemoteUnavailableError("boom"), [1.0])
        clock = FakeClock()

        with pytest.raises(RemoteUnavailableError):
            _client(provider, clock).embed(ImagePayload(b"img"))

        assert provider.calls == ["image"]

    def test_empty_embedding_is_an_error(self) -> None:
        provider = ScriptedProvider([])
        with pytest.raises(RemoteUnavailableError, match="empty"):
            _client(provider, FakeClock()).embed(TextPayload("crack"))

    def test_label_requests_are_spaced(self) -> None:
        provider = ScriptedProvider([1.0], [2.0], [3.0])
        clock = FakeClock()
        client = _client(provider, clock, label_spacing_s=1.0)

        client.embed(TextPayload("crack"))
        clock.now += 0.25
        client.embed(TextPayload("dent"))
        client.embed(TextPayload("good"))

        assert provider.calls == ["text:crack", "text:dent", "text:good"]
        assert clock.sleeps == pytest.approx([0.75, 1.0])

    def test_label_requests_from_concurrent_threads_are_spaced(self) -> None:
        started: list[float] = []
        started_lock = threading.Lock()

        class TimedProvider(ScriptedProvider):
            def embed_text(self, text: str) -> list[float]:
                with started_lock:
                    started.append(time.monotonic())
                time.sleep(0.01)
                return [1.0]

        client = EmbeddingClient(TimedProvider(), label_spacing_s=0.2)  # type: ignore[arg-type]
        client.embed(TextPayload("warmup"))
        started.clear()

        barrier = threading.Barrier(2)

        def worker(label: str) -> None:
            barrier.wait()
            client.embed(TextPayload(label))

        threads = [threading.Thread(target=worker, args=(label,)) for label in ("crack", "dent")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert len(started) == 2
        first, second = sorted(started)
        assert second - first >= 0.19

    def test_image_requests_are_not_spaced(self) -> None:
        provider = ScriptedProvider([1.0], [2.0], [3.0])
        clock = FakeClock()
        client = _client(provider, clock, label_spacing_s=1.0)

        client.embed(TextPayload("crack"))
        client.embed(ImagePayload(b"a"))
        client.embed(ImagePayload(b"b"))

        assert clock.sleeps == []

    def test_invalid_max_attempts(self) -> None:
        with pytest.raises(ValueError, match="max_attempts"):
            EmbeddingClient(MockEmbeddingProvider(), max_attempts=0)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class TestMockEmbeddingProvider:
    def test_deterministic_unit_vectors(self) -> None:
        provider = MockEmbeddingProvider(dim=8)
        first = provider.embed_text("crack")
        assert first == provider.embed_text("crack")
        assert first != provider.embed_text("good")
        assert len(first) == 8
        assert sum(v * v for v in first) == pytest.approx(1.0)


class TestHuggingFaceEmbeddingProvider:
    def test_text_request_and_pooling(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[[1.0, 2.0], [3.0, 4.0]])

        provider = HuggingFaceEmbeddingProvider(
            "hf_test",
            "openai/clip",
            base_url="https://hf.test/models",
            transport=httpx.MockTransport(handler),
        )

        assert provider.embed_text("crack") == [2.0, 3.0]
        assert str(seen[0].url) == "https://hf.test/models/openai/clip"
        assert seen[0].headers["Authorization"] == "Bearer hf_test"
        assert json.loads(seen[0].content) == {"inputs": "crack"}

    def test_image_request_sends_raw_bytes(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[0.5, 0.5])

        provider = HuggingFaceEmbeddingProvider("hf_test", "m", transport=httpx.MockTransport(handler))

        assert provider.embed_image(b"\x89PNG", "image/png") == [0.5, 0.5]
        assert seen[0].content == b"\x89PNG"
        assert seen[0].headers["Content-Type"] == "image/png"

    def test_429_maps_to_rate_limited_with_header_hint(self) -> None:
        provider = HuggingFaceEmbeddingProvider(
            "hf_test",
            "m",
            transport=httpx.MockTransport(
                lambda _: httpx.Response(429, headers={"Retry-After": "3"}, json={"error": "Rate limit reached"})
            ),
        )

        with pytest.raises(RateLimitedError) as exc_info:
            provider.embed_text("crack")
        assert exc_info.value.retry_after == 3.0

    def test_server_error_maps_to_unavailable(self) -> None:
        provider = HuggingFaceEmbeddingProvider(
            "hf_test",
            "m",
            transport=httpx.MockTransport(lambda _: httpx.Response(503, json={"error": "loading"})),
        )
        with pytest.raises(RemoteUnavailableError, match="503"):
            provider.embed_text("crack")


class TestReplicateEmbeddingProvider:
    def test_successful_prediction(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                201,
                json={
                    "id": "p1",
                    "status": "succeeded",
                    "output": [{"input": "crack", "embedding": [0.1, 0.9]}],
                },
            )

        provider = ReplicateEmbeddingProvider(
            "r8_test",
            "abc123",
            base_url="https://replicate.test/v1",
            transport=httpx.MockTransport(handler),
        )

        assert provider.embed_text("crack") == [0.1, 0.9]
        body = json.loads(seen[0].content)
        assert body == {"version": "abc123", "input": {"inputs": "crack"}}
        assert seen[0].headers["Prefer"] == "wait"

    def test_image_is_sent_as_data_uri(self) -> None:
        seen: list[dict[str, object]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(201, json={"status": "succeeded", "output": [{"embedding": [1.0]}]})

        provider = ReplicateEmbeddingProvider("r8_test", "abc123", transport=httpx.MockTransport(handler))
        provider.embed_image(b"\x00\x01", "image/png")

        assert seen[0]["input"] == {"inputs": "data:image/png;base64,AAE="}

    def test_throttled_message_hint(self) -> None:
        body = {"title": "Request was throttled", "detail": "Your rate limit resets in ~6s.", "status": 429}
        provider = ReplicateEmbeddingProvider(
            "r8_test",
            "abc123",
            transport=httpx.MockTransport(lambda _: httpx.Response(429, json=body)),
        )

        with pytest.raises(RateLimitedError) as exc_info:
            provider.embed_text("crack")
        assert exc_info.value.retry_after == 6.0

    def test_failed_prediction_is_unavailable(self) -> None:
        provider = ReplicateEmbeddingProvider(
            "r8_test",
            "abc123",
            transport=httpx.MockTransport(
                lambda _: httpx.Response(201, json={"status": "failed", "error": "CUDA out of memory"})
            ),
        )
        with pytest.raises(RemoteUnavailableError, match="CUDA"):
            provider.embed_text("crack")


class TestCreateEmbeddingProvider:
    def test_mock_when_no_tokens(self) -> None:
        provider = create_embedding_provider(Settings(inference_provider="auto"))
        assert isinstance(provider, MockEmbeddingProvider)

    def test_replicate_preferred_when_token_set(self) -> None:
        provider = create_embedding_provider(Settings(replicate_api_token="r8", hf_api_token="hf"))
        assert isinstance(provider, ReplicateEmbeddingProvider)

    def test_huggingface_when_only_hf_token(self) -> None:
        provider = create_embedding_provider(Settings(hf_api_token="hf"))
        assert isinstance(provider, HuggingFaceEmbeddingProvider)
        assert provider.model_id == Settings().embedding_model
