"""Environment-based configuration for SnapLabel."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from SNAPLABEL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SNAPLABEL_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model location: a bundled file wins over the HuggingFace repo
    model_path: str | None = None
    model_repo_id: str | None = None
    model_filename: str = "best.onnx"
    models_dir: str = "models"
    labels: list[str] | None = None
    eager_load: bool = False

    # Model input contract
    input_width: int = Field(default=640, ge=1)
    input_height: int = Field(default=640, ge=1)
    input_layout: Literal["nchw", "nhwc"] = "nchw"
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    @property
    def target_size(self) -> tuple[int, int]:
        """Model input size as (width, height)."""
        return (self.input_width, self.input_height)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
