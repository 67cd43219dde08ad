"""
Configuration loader for the background removal service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear. None of
these values are editable by end users at runtime.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Intake
    max_upload_bytes: int = Field(10 * 1024 * 1024)
    accepted_mime_types: Tuple[str, ...] = Field(
        ("image/jpeg", "image/png", "image/gif", "image/webp")
    )

    # Working raster + compositing
    max_working_dimension: int = Field(800)
    mask_threshold: float = Field(0.5)
    min_foreground_ratio: float = Field(0.005)

    # Remote tier (remove.bg compatible)
    remove_bg_api_key: Optional[str] = Field(None)
    remote_endpoint: str = Field("https://api.remove.bg/v1.0/removebg")
    remote_timeout_seconds: float = Field(30.0)
    remote_connect_timeout_seconds: float = Field(5.0)
    remote_send_color_hint: bool = Field(True)
    color_key_tolerance: int = Field(8)

    # Local tier
    local_model_path: Optional[Path] = Field(None)
    local_model_long_edge: int = Field(512)
    # MODNet exports take forward(img, inference); plain matting exports take forward(img).
    local_model_inference_flag: bool = Field(True)

    log_level: str = Field("INFO")

    @field_validator("mask_threshold", "min_foreground_ratio")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be within [0, 1]")
        return v

    @field_validator(
        "max_upload_bytes",
        "max_working_dimension",
        "local_model_long_edge",
        "remote_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
