"""
Application Configuration

Centralized configuration using Pydantic Settings for type-safe
environment variable management with validation.

This module contains ONLY process-level settings (where models live,
which device to use, output frame rate). The model's own tuning document
(config.json next to the ONNX file) is handled by audio2afan.config.
"""

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Get the directory containing this file, then go up to the project root
_CONFIG_DIR = Path(__file__).parent.parent.parent


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables or .env file.
    Example: MODEL_DIR=/opt/models/audio2afan or use_gpu=true
    """

    model_config = SettingsConfigDict(
        env_file=_CONFIG_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Model asset locations
    model_dir: str = "./models/audio2afan"
    onnx_model_file: str = "model.onnx"
    config_file: str = "config.json"
    solve_data_file: str = "solve_data.npz"  # Optional, enables the PCA solve path

    # Inference runtime
    use_gpu: bool = False  # Try CUDA first, fall back to CPU
    inference_threads: int | None = None  # None = half the available cores
    batch_concurrency: int = Field(default=4, ge=1)

    # Animation output
    blendshape_fps: int = Field(default=30, ge=1, le=255)
    afan_version: int = Field(default=2, ge=1, le=2)

    debug: bool = False
    log_level: str = "INFO"

    @property
    def model_path(self) -> Path:
        return Path(self.model_dir) / self.onnx_model_file

    @property
    def config_path(self) -> Path:
        return Path(self.model_dir) / self.config_file

    @property
    def solve_data_path(self) -> Path:
        return Path(self.model_dir) / self.solve_data_file

    @property
    def frame_interval_ms(self) -> float:
        return 1000 / self.blendshape_fps

    @property
    def resolved_threads(self) -> int:
        if self.inference_threads:
            return self.inference_threads
        return max(1, (os.cpu_count() or 2) // 2)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses lru_cache to ensure settings are only loaded once
    and reused throughout the application lifecycle.
    """
    return Settings()
