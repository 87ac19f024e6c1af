"""Environment-based configuration for DetectFlow."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from DETECTFLOW_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DETECTFLOW_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080

    # Authentication (None = disabled)
    api_key: str | None = None

    # Inference backend ("auto" picks replicate, then huggingface, then mock)
    inference_provider: Literal["auto", "replicate", "huggingface", "mock"] = "auto"
    hf_api_token: str | None = None
    replicate_api_token: str | None = None
    hf_inference_url: str = "https://router.huggingface.co/hf-inference/models"
    replicate_api_url: str = "https://api.replicate.com/v1"

    # Model selection
    embedding_model: str = "openai/clip-vit-large-patch14"
    replicate_clip_version: str = "75b33f253f7714a281ad3e9b28f63e3232d583716ef6718f2e46641077ea040a"
    detection_model: str = "facebook/detr-resnet-50"

    # Classification policy
    softmax_temperature: float = Field(default=100.0, gt=0)
    embed_max_retries: int = Field(default=3, ge=1)
    rate_limit_default_wait_s: float = Field(default=10.0, ge=0)
    label_request_spacing_s: float = Field(default=1.0, ge=0)

    # Object detection model warm-up
    model_loading_retries: int = Field(default=3, ge=0)
    model_loading_wait_s: float = Field(default=10.0, ge=0)

    http_timeout_s: float = Field(default=60.0, gt=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Storage
    database_path: str = "data/detectflow.db"
    upload_dir: str = "data/uploads"
    embedding_cache_dir: str = "data/embedding_cache"

    @property
    def resolved_provider(self) -> Literal["replicate", "huggingface", "mock"]:
        """Return the concrete backend, resolving "auto" from configured tokens."""
        if self.inference_provider != "auto":
            return self.inference_provider
        if self.replicate_api_token:
            return "replicate"
        if self.hf_api_token:
            return "huggingface"
        return "mock"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
