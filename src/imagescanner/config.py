"""Environment-based configuration for ImageScanner."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

IMAGENET_LABELS_URL = "https://storage.googleapis.com/download.tensorflow.org/data/ImageNetLabels.txt"

DEFAULT_FALLBACK_LABELS: list[str] = [
    "Siamese cat, Siamese",
    "Persian cat",
    "Egyptian cat",
    "Tiger cat",
    "Tabby cat",
]


class Settings(BaseSettings):
    """Application settings loaded from IMAGESCANNER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGESCANNER_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    log_level: str = "INFO"

    # Authentication for /api/v1 (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model and labels
    model_name: str = "mobilenet_v2"
    models_dir: str = "models"
    labels_url: str = IMAGENET_LABELS_URL
    labels_path: str | None = None
    fetch_timeout: float = Field(default=30.0, gt=0)

    # Demo mode skips model acquisition entirely
    demo_mode: bool = False
    fallback_labels: list[str] = Field(default_factory=lambda: list(DEFAULT_FALLBACK_LABELS), min_length=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Browser sessions kept in memory
    max_sessions: int = Field(default=256, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
