"""Environment-based configuration for Asclepius."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MODEL_NAME = "cancer_classification"
DEFAULT_NUM_THREADS = 4


class Settings(BaseSettings):
    """Application settings loaded from ASCLEPIUS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ASCLEPIUS_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model asset
    model_name: str = DEFAULT_MODEL_NAME
    models_dir: str = "models"
    model_repo_id: str | None = None
    eager_load: bool = True

    # Classifier options
    confidence_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    max_results: int = Field(default=1, ge=1)

    # ONNX Runtime threading
    num_threads: int = Field(default=DEFAULT_NUM_THREADS, ge=1)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0.0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


class ClassifierConfig(BaseModel):
    """Immutable options a classification adapter is built with."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    confidence_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    max_results: int = Field(default=1, gt=0)
    model_name: str = DEFAULT_MODEL_NAME
    num_threads: int = Field(default=DEFAULT_NUM_THREADS, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> ClassifierConfig:
        return cls(
            confidence_threshold=settings.confidence_threshold,
            max_results=settings.max_results,
            model_name=settings.model_name,
            num_threads=settings.num_threads,
        )


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
