"""Utility functions for the Tromero client."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from config import TromeroConfig
from logger import mask_secret

log = logging.getLogger("tromero")


def load_env_files() -> bool:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))

    if not loaded_any:
        log.debug(".env not loaded (not found or no variables applied).")
    return loaded_any


def dump_config(config: TromeroConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=== Tromero client config ===")
    log.info("TROMERO_BASE_URL=%s", config.base_url)
    log.info("TROMERO_DATA_URL=%s", config.data_url)
    log.info(
        "TROMERO_KEY_set=%s value=%s",
        bool(config.tromero_key),
        mask_secret(config.tromero_key),
    )
    log.info(
        "OPENAI_API_KEY_set=%s value=%s",
        bool(config.openai_api_key),
        mask_secret(config.openai_api_key),
    )
    log.info("TROMERO_SAVE_DATA=%s", config.save_data)
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("STREAM_IDLE_TIMEOUT_S=%s", config.stream_idle_timeout_s)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path or "<console>")
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("=============================")
