"""Configuration management for the Tromero client."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_BASE_URL = "https://midyear-grid-402910.lm.r.appspot.com/tailor/v1"
DEFAULT_USER_AGENT = "tromero-python/0.3.0"


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


@dataclass(frozen=True)
class TromeroConfig:
    """Client configuration."""

    # Credentials
    tromero_key: str
    openai_api_key: str

    # Custom backend endpoints
    base_url: str
    data_url: str

    # Default for the per-call save_data control setting
    save_data: bool

    # Timeouts
    request_timeout_s: float
    stream_idle_timeout_s: float

    # Logging
    log_level: str
    log_path: str
    user_agent: str

    @classmethod
    def from_env(cls) -> TromeroConfig:
        """Load configuration from environment variables."""
        base_url = _env_str("TROMERO_BASE_URL", DEFAULT_BASE_URL).rstrip("/")
        return cls(
            tromero_key=os.getenv("TROMERO_KEY", ""),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            base_url=base_url,
            data_url=_env_str("TROMERO_DATA_URL", f"{base_url}/data"),
            save_data=_env_bool("TROMERO_SAVE_DATA", False),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 60.0),
            stream_idle_timeout_s=_env_float("STREAM_IDLE_TIMEOUT_S", 120.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", ""),
            user_agent=_env_str("USER_AGENT", DEFAULT_USER_AGENT),
        )

    def validate(self, require_key: bool = True) -> None:
        """Validate configuration."""
        if require_key and not (self.tromero_key or self.openai_api_key):
            raise ValueError("TROMERO_KEY or OPENAI_API_KEY is required")
        if not self.base_url:
            raise ValueError("TROMERO_BASE_URL must be non-empty")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.stream_idle_timeout_s <= 0:
            raise ValueError("STREAM_IDLE_TIMEOUT_S must be > 0")


def load_config() -> TromeroConfig:
    """Load configuration from environment."""
    return TromeroConfig.from_env()
