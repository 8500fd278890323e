"""Error taxonomy and OpenAI-style error bodies."""

from __future__ import annotations

from typing import Any, Dict, Optional


def error_payload(message: str, error_type: str = "proxy_error", code: Optional[str] = None) -> Dict[str, Any]:
    """Build an OpenAI-compatible error body: {"error": {"message", "type", "code"?}}."""
    payload: Dict[str, Any] = {"error": {"message": message, "type": error_type}}
    if code is not None:
        payload["error"]["code"] = code
    return payload


class ProxyError(Exception):
    """Base class for errors that map onto an HTTP status and error body."""

    status_code = 500
    error_type = "proxy_error"
    code: Optional[str] = None

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_payload(self) -> Dict[str, Any]:
        return error_payload(self.message, self.error_type, self.code)


class ValidationError(ProxyError):
    """Malformed or missing request fields. Never retried."""

    status_code = 400
    error_type = "invalid_request_error"


class AuthenticationError(ProxyError):
    """Missing/invalid credential, or the backend rejected it."""

    status_code = 401
    error_type = "authentication_error"


class ContinuityError(ProxyError):
    """The backend refused to continue a conversation handle."""

    status_code = 500
    error_type = "continuity_error"


class BackendError(ProxyError):
    """Transport failure, malformed or empty reply, or exhausted rate-limit retries."""

    status_code = 500
    error_type = "backend_error"


class RateLimitError(BackendError):
    """Backend answered with HTTP 429."""

    code = "rate_limited"

    def __init__(self, message: str, *, retry_after: Optional[float] = None, code: Optional[str] = None) -> None:
        super().__init__(message, code=code)
        self.retry_after = retry_after


class InternalError(ProxyError):
    """Unexpected defect. Callers only ever see a generic message."""

    status_code = 500
    error_type = "internal_error"
