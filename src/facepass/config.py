"""Environment-based configuration for FacePass."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FACEPASS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACEPASS_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None
    # Admin/debug routes (None = routes refuse every request)
    admin_token: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    models_dir: str = "models"
    face_detection_model: str = "retinaface_mobilenetv2"
    face_landmark_model: str | None = None
    face_recognition_model: str = "auraface_v1"
    accept_insightface_license: bool = False

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0.0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)
    min_image_bytes: int = Field(default=100, ge=0)

    # Model lifecycle: seconds a successful load stays fresh before reconfirming
    model_validity: int = Field(default=900, ge=0)
    preload_models: bool = True
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Detection. Longer image side is downscaled to detection_input_size.
    detection_input_size: int = Field(default=320, ge=32)
    detection_threshold: float = Field(default=0.4, gt=0.0, le=1.0)
    nms_threshold: float = Field(default=0.4, gt=0.0, le=1.0)
    crop_margin: float = Field(default=0.2, ge=0.0, le=1.0)

    # Matching
    match_threshold: float = Field(default=0.6, gt=0.0)
    descriptor_cache_size: int = Field(default=100, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
