"""Environment-based configuration for cifarserve."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from CIFARSERVE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CIFARSERVE_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3000
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    # Model artifact. model_repo_id is only consulted when model_path is missing.
    model_path: str = "models/cifar10.onnx"
    models_dir: str = "models"
    model_repo_id: str | None = None
    model_filename: str = "cifar10.onnx"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_file_size: int = Field(default=5 * 1024 * 1024, ge=1)
    max_image_pixels: int = Field(default=16_777_216, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
