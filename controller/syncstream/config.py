"""Central configuration for the syncstream controller service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


class Settings(BaseSettings):
    """Environment-driven settings for controller subsystems."""

    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    rendezvous_prefix: str = Field(
        "syncstream-v1-", description="Prefix that namespaces short codes on the shared relay"
    )
    connect_timeout_seconds: float = Field(10.0, description="Deadline for a receiver dial to yield a stream")

    relay_ws_url: str = Field("ws://localhost:9000/peer", description="Rendezvous relay WebSocket endpoint")
    relay_ping_interval: Optional[float] = Field(30.0, description="WebSocket keepalive ping interval")

    capture_source: Optional[str] = Field(
        None, description="OpenCV source used as the display feed (device index or URL); unset disables sharing"
    )
    capture_fps: float = Field(10.0, description="Frame rate pumped from the capture source")

    preview_fps: int = Field(15, description="Target FPS for MJPEG preview stream")
    jpeg_quality: int = Field(80, description="JPEG quality for relayed and preview frames")

    gemini_api_key: Optional[str] = Field(None, description="API key for the Gemini Developer API")
    gemini_model: str = Field("gemini-2.5-flash", description="Model used for screen analysis")
    gemini_api_version: str = Field("", description="Optional Gemini API version override")

    log_level: str = Field("INFO", description="Logging level for controller")

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
