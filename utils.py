"""Utility functions for the LLM gateway."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from config import AppConfig

log = logging.getLogger("llm_gateway")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))
    else:
        log.info("No .env in program directory: %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))
    elif p2 != p1:
        log.info("No .env in current directory: %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config: AppConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=== LLM gateway startup config ===")
    log.info("GATEWAY_CONFIG=%s", config.config_path)
    log.info("HOST=%s", config.host)
    log.info("PORT=%s", config.port)
    log.info("API_PREFIX=%s", config.api_prefix)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("MODEL_REFRESH_TTL_S=%s", config.model_refresh_ttl_s)
    log.info("MODEL_REFRESH_INTERVAL_S=%s", config.model_refresh_interval_s)
    if float(config.model_refresh_interval_s) == 0.0:
        log.info("MODEL_REFRESH_INTERVAL_S=0 means models refresh only lazily (TTL on read).")
    log.info("MODEL_CONNECT_TIMEOUT_S=%s", config.model_connect_timeout_s)
    log.info("MODEL_REQUEST_TIMEOUT_S=%s", config.model_request_timeout_s)
    log.info("CONNECT_TIMEOUT_S=%s", config.connect_timeout_s)
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("DEBUG_REQUEST=%s", config.debug_request)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("ProgramDir=%s", str(Path(__file__).resolve().parent))
    log.info("===============================")
