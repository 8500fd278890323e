"""Logging for the character chat proxy: one named logger, credentials never in clear."""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler

try:
    import colorlog
    HAS_COLORLOG = True
except ImportError:
    HAS_COLORLOG = False

LOGGER_NAME = "character_proxy"
DEFAULT_LOG_PATH = "/var/log/character-proxy/character-proxy.log"

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
COLOR_FORMAT = "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s"
LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

# "Bearer <token>" / "Token <token>" as they appear in headers, reprs and error text.
_CREDENTIAL_RE = re.compile(r"\b(Bearer|Token)(\s+)([A-Za-z0-9._~+/=-]{4,})", re.IGNORECASE)


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """
    Mask a secret, revealing at most a quarter of it at each end.

    Short secrets (8 characters or fewer) are fully starred.
    """
    s = (s or "").strip()
    if not s:
        return ""
    quarter = len(s) // 4
    if len(s) <= 8 or quarter == 0:
        return "*" * len(s)
    start = min(keep_start, quarter)
    end = min(keep_end, quarter)
    return f"{s[:start]}...{s[-end:]}"


def mask_credentials(text: str) -> str:
    """Replace every ``Bearer``/``Token`` credential in ``text`` with its masked form."""
    return _CREDENTIAL_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{mask_secret(m.group(3))}", text)


class CredentialMaskingFilter(logging.Filter):
    """Rewrites records so a credential that slipped into a message is never emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_credentials(message)
        if masked != message:
            record.msg = masked
            record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = mask_credentials(record.exc_text)
        return True


def _log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper().strip()


def _color_enabled() -> bool:
    return HAS_COLORLOG and os.getenv("LOG_COLOR", "true").lower() in ("true", "1", "yes")


def _create_log_handler(log_path: str) -> tuple[logging.Handler, Exception | None]:
    """Rotating file handler (1 MB x 3), or a stream handler if the file can't be opened."""
    try:
        return RotatingFileHandler(log_path, maxBytes=1_048_576, backupCount=3, encoding="utf-8"), None
    except Exception as e:
        return logging.StreamHandler(), e


def _create_log_formatter() -> logging.Formatter:
    if _color_enabled():
        return colorlog.ColoredFormatter(COLOR_FORMAT, reset=True, log_colors=LOG_COLORS)
    return logging.Formatter(PLAIN_FORMAT)


def setup_logging(log_path: str | None = None) -> logging.Logger:
    """
    Configure the ``character_proxy`` logger.

    LOG_LEVEL=DISABLE turns logging off entirely; otherwise records go to
    ``log_path`` (default /var/log/character-proxy/character-proxy.log) through
    a credential-masking filter.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False

    level_name = _log_level()
    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        return logger

    logging.disable(logging.NOTSET)
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    log_path = log_path or DEFAULT_LOG_PATH
    handler, fallback_err = _create_log_handler(log_path)
    handler.setFormatter(_create_log_formatter())
    handler.addFilter(CredentialMaskingFilter())
    logger.addHandler(handler)

    if fallback_err is not None:
        logger.warning("Cannot open log file %r (%s); logging to stderr", log_path, fallback_err)
    return logger
