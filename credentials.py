"""Request parsing: bearer credential, persona/conversation model field, user message."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from errors import AuthenticationError, ValidationError
from models import ParsedRequest

BEARER_PREFIX = "Bearer "


def parse_bearer(authorization: Optional[str]) -> str:
    """Extract the backend access token from an ``Authorization: Bearer <value>`` header."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise AuthenticationError("Missing or invalid authorization header")
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationError("Missing or invalid authorization header")
    return token


def parse_model(
    model: Any,
    prefixes: Sequence[str] = ("character-ai:", "cai:"),
    delimiter: str = ":",
) -> Tuple[str, Optional[str]]:
    """
    Split the model field into (persona_id, conversation_id).

    Accepts ``persona`` or ``persona:conversation``, optionally behind one of the
    namespace ``prefixes``. Only surrounding whitespace is trimmed; an empty
    conversation part means "no conversation".
    """
    if not isinstance(model, str) or not model.strip():
        raise ValidationError("Missing required field: model", code="model_required")

    raw = model.strip()
    for prefix in prefixes:
        if prefix and raw.startswith(prefix):
            raw = raw[len(prefix):]
            break

    persona, sep, conversation = raw.partition(delimiter)
    persona = persona.strip()
    if not persona:
        raise ValidationError(
            f"Invalid model {model!r}: persona id is missing", code="invalid_model"
        )
    conversation_id = conversation.strip() if sep else ""
    return persona, (conversation_id or None)


def message_text(content: Any) -> Optional[str]:
    """Return plain text for a message content (string or list of text parts)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "text" and isinstance(item.get("text"), str):
                parts.append(item["text"])
        if parts:
            return "\n".join(parts)
    return None


def last_user_message(messages: Any) -> str:
    """Text of the last role="user" message; ValidationError when there is none."""
    if not isinstance(messages, list) or not messages:
        raise ValidationError("Missing required field: messages")
    for m in reversed(messages):
        if not isinstance(m, dict) or m.get("role") != "user":
            continue
        text = message_text(m.get("content"))
        if text and text.strip():
            return text
    raise ValidationError("No user message found")


def parse_chat_request(
    headers: Mapping[str, str],
    body: Dict[str, Any],
    prefixes: Sequence[str] = ("character-ai:", "cai:"),
    delimiter: str = ":",
) -> ParsedRequest:
    """Parse headers and JSON body into a ParsedRequest. Pure: no side effects."""
    credential = parse_bearer(headers.get("authorization"))
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body: expected object")
    persona_id, conversation_id = parse_model(body.get("model"), prefixes, delimiter)
    user_message = last_user_message(body.get("messages"))
    return ParsedRequest(
        credential=credential,
        persona_id=persona_id,
        conversation_id=conversation_id,
        model=str(body.get("model")).strip(),
        user_message=user_message,
        stream=bool(body.get("stream", False)),
    )
