"""Configuration management for the character chat proxy."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple


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


def _csv_list(name: str, default: str) -> Tuple[str, ...]:
    """Parse comma-separated environment variable into an ordered tuple."""
    v = os.getenv(name)
    if v is None:
        v = default
    items = [x.strip() for x in v.split(",") if x.strip() and x.strip().lower() != "empty"]
    return tuple(items)


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Backend settings
    backend_base_url: str
    user_agent: str
    http_proxy: str
    https_proxy: str

    # Model field parsing
    model_prefixes: Tuple[str, ...]
    model_delimiter: str

    # Lifetimes
    session_idle_timeout_s: float
    conversation_ttl_s: float
    sweep_interval_s: float

    # Timeouts and limits
    request_timeout_s: float
    stream_idle_timeout_s: float
    key_lock_timeout_s: float
    rate_limit_retries: int
    rate_limit_backoff_s: float
    rate_limit_max_delay_s: float
    history_limit: int

    # Server settings
    port: int
    log_level: str
    max_request_bytes: int
    log_path: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            backend_base_url=_env_str("CHARACTER_AI_BASE_URL", "https://beta.character.ai").rstrip("/"),
            user_agent=_env_str(
                "USER_AGENT",
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            ),
            http_proxy=_env_str("HTTP_PROXY", ""),
            https_proxy=_env_str("HTTPS_PROXY", ""),
            model_prefixes=_csv_list("MODEL_PREFIXES", "character-ai:,cai:"),
            model_delimiter=":",
            session_idle_timeout_s=_env_float("SESSION_IDLE_TIMEOUT_S", 1800.0),
            conversation_ttl_s=_env_float("CONVERSATION_TTL_S", 86400.0),
            sweep_interval_s=_env_float("SWEEP_INTERVAL_S", 60.0),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 60.0),
            stream_idle_timeout_s=_env_float("STREAM_IDLE_TIMEOUT_S", 30.0),
            key_lock_timeout_s=_env_float("KEY_LOCK_TIMEOUT_S", 120.0),
            rate_limit_retries=_env_int("RATE_LIMIT_RETRIES", 3),
            rate_limit_backoff_s=_env_float("RATE_LIMIT_BACKOFF_S", 1.0),
            rate_limit_max_delay_s=_env_float("RATE_LIMIT_MAX_DELAY_S", 30.0),
            history_limit=_env_int("HISTORY_LIMIT", 20),
            port=_env_int("PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 2_000_000),  # ~2MB
            log_path=_env_str("LOG_PATH", "/var/log/character-proxy/character-proxy.log"),
        )

    def validate(self) -> None:
        """Validate configuration."""
        if not self.backend_base_url.startswith(("http://", "https://")):
            raise ValueError("CHARACTER_AI_BASE_URL must be an http(s) URL")
        if self.session_idle_timeout_s <= 0:
            raise ValueError("SESSION_IDLE_TIMEOUT_S must be > 0")
        if self.conversation_ttl_s <= 0:
            raise ValueError("CONVERSATION_TTL_S must be > 0")
        if self.sweep_interval_s <= 0:
            raise ValueError("SWEEP_INTERVAL_S must be > 0")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.stream_idle_timeout_s <= 0:
            raise ValueError("STREAM_IDLE_TIMEOUT_S must be > 0")
        if self.key_lock_timeout_s <= 0:
            raise ValueError("KEY_LOCK_TIMEOUT_S must be > 0")
        if self.rate_limit_retries < 0:
            raise ValueError("RATE_LIMIT_RETRIES must be >= 0")
        if self.rate_limit_backoff_s < 0:
            raise ValueError("RATE_LIMIT_BACKOFF_S must be >= 0")
        if self.rate_limit_max_delay_s < 0:
            raise ValueError("RATE_LIMIT_MAX_DELAY_S must be >= 0")
        if self.history_limit < 0:
            raise ValueError("HISTORY_LIMIT must be >= 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
