"""Process settings for the LLM gateway service."""

from __future__ import annotations

import os
from dataclasses import dataclass


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


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Routing configuration file (servers, profiles, rules)
    config_path: str

    # Server settings
    host: str
    port: int
    api_prefix: str
    max_request_bytes: int
    user_agent: str

    # Model discovery
    model_refresh_ttl_s: float
    model_refresh_interval_s: float
    model_connect_timeout_s: float
    model_request_timeout_s: float

    # Forwarding timeouts (o-series style models can take minutes to answer)
    connect_timeout_s: float
    request_timeout_s: float

    # Logging
    log_level: str
    log_path: str
    debug_request: bool

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            config_path=_env_str("GATEWAY_CONFIG", "config.toml"),
            host=_env_str("HOST", "0.0.0.0"),
            port=_env_int("PORT", 3000),
            api_prefix=_env_str("API_PREFIX", "/v1").rstrip("/"),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 10_000_000),
            user_agent=_env_str("USER_AGENT", "llm-gateway/1.0.0"),
            model_refresh_ttl_s=_env_float("MODEL_REFRESH_TTL_S", 60.0),
            model_refresh_interval_s=_env_float("MODEL_REFRESH_INTERVAL_S", 300.0),
            model_connect_timeout_s=_env_float("MODEL_CONNECT_TIMEOUT_S", 2.0),
            model_request_timeout_s=_env_float("MODEL_REQUEST_TIMEOUT_S", 5.0),
            connect_timeout_s=_env_float("CONNECT_TIMEOUT_S", 10.0),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 300.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", "llm-gateway.log"),
            debug_request=_env_bool("DEBUG_REQUEST", False),
        )

    def validate(self) -> None:
        """Validate configuration."""
        if not self.config_path:
            raise ValueError("GATEWAY_CONFIG must be non-empty")
        if not (0 < self.port < 65536):
            raise ValueError("PORT must be in 1..65535")
        if not self.api_prefix.startswith("/"):
            raise ValueError("API_PREFIX must start with '/'")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if self.model_refresh_ttl_s < 0:
            raise ValueError("MODEL_REFRESH_TTL_S must be >= 0")
        if self.model_refresh_interval_s < 0:
            raise ValueError("MODEL_REFRESH_INTERVAL_S must be >= 0")
        if self.model_connect_timeout_s <= 0:
            raise ValueError("MODEL_CONNECT_TIMEOUT_S must be > 0")
        if self.model_request_timeout_s <= 0:
            raise ValueError("MODEL_REQUEST_TIMEOUT_S must be > 0")
        if self.connect_timeout_s <= 0:
            raise ValueError("CONNECT_TIMEOUT_S must be > 0")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
