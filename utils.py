"""Utility functions for the character chat proxy."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

log = logging.getLogger("character_proxy")


def load_env_files() -> list[Path]:
    """Load .env from the program directory, then the working directory (later wins).

    Returns the files that were read.
    """
    candidates = [Path(__file__).resolve().parent / ".env", Path.cwd() / ".env"]
    loaded: list[Path] = []
    for path in candidates:
        if path in loaded or not path.exists():
            continue
        load_dotenv(dotenv_path=str(path), override=True)
        loaded.append(path)
        log.info("Loaded .env from %s", path)
    if not loaded:
        log.info("No .env found in %s", ", ".join(str(p.parent) for p in candidates))
    return loaded


def dump_config(config) -> None:
    """Log effective configuration at startup."""
    log.info("=== Character proxy startup config ===")
    log.info("CHARACTER_AI_BASE_URL=%s", config.backend_base_url)
    log.info("MODEL_PREFIXES=%s", list(config.model_prefixes))
    log.info("SESSION_IDLE_TIMEOUT_S=%s", config.session_idle_timeout_s)
    log.info("CONVERSATION_TTL_S=%s", config.conversation_ttl_s)
    log.info("SWEEP_INTERVAL_S=%s", config.sweep_interval_s)
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("STREAM_IDLE_TIMEOUT_S=%s", config.stream_idle_timeout_s)
    log.info("KEY_LOCK_TIMEOUT_S=%s", config.key_lock_timeout_s)
    log.info("RATE_LIMIT_RETRIES=%s", config.rate_limit_retries)
    log.info("RATE_LIMIT_BACKOFF_S=%s", config.rate_limit_backoff_s)
    log.info("RATE_LIMIT_MAX_DELAY_S=%s", config.rate_limit_max_delay_s)
    log.info("HISTORY_LIMIT=%s", config.history_limit)
    log.info("HTTPS_PROXY_set=%s HTTP_PROXY_set=%s", bool(config.https_proxy), bool(config.http_proxy))
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("ProgramDir=%s", str(Path(__file__).resolve().parent))
    log.info("======================================")
