"""Data model shared by the session, continuity and exchange layers."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from logger import mask_secret


@dataclass(frozen=True)
class SessionKey:
    """Registry key: one live backend connection per (credential, persona)."""

    credential: str
    persona_id: str

    def __repr__(self) -> str:
        return f"SessionKey(credential={mask_secret(self.credential)!r}, persona_id={self.persona_id!r})"

    __str__ = __repr__


@dataclass(frozen=True)
class ParsedRequest:
    """Result of parsing an incoming chat completion request."""

    credential: str
    persona_id: str
    conversation_id: Optional[str]
    model: str
    user_message: str
    stream: bool = False

    @property
    def key(self) -> SessionKey:
        return SessionKey(self.credential, self.persona_id)


@dataclass
class BackendConnection:
    """An authenticated backend handle owned by the session registry."""

    credential: str
    user: Dict[str, Any] = field(default_factory=dict)
    client: Any = None
    created_at: float = field(default_factory=time.time)

    @property
    def username(self) -> str:
        return str(self.user.get("username") or self.user.get("name") or "")


class ConversationStatus(str, enum.Enum):
    """Status of a cached conversation. An absent conversation has no state at all."""

    ACTIVE = "active"
    STALE = "stale"


@dataclass
class Exchange:
    """One request/response cycle."""

    input_text: str
    output_text: str
    prompt_tokens: int
    completion_tokens: int
    created: int = field(default_factory=lambda: int(time.time()))

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input": self.input_text,
            "output": self.output_text,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "created": self.created,
        }


@dataclass
class ConversationState:
    """Cached conversation for a (credential, persona) pair.

    ``last_activity`` is on the registry clock (monotonic by default) and drives
    expiry; ``created_at`` is wall-clock for display only.
    """

    persona_id: str
    handle: Optional[str]
    last_activity: float
    status: ConversationStatus = ConversationStatus.ACTIVE
    created_at: float = field(default_factory=time.time)
    history: List[Exchange] = field(default_factory=list)
    exchanges: int = 0

    def record(self, exchange: Exchange, now: float, history_limit: int) -> None:
        self.exchanges += 1
        self.last_activity = now
        if history_limit <= 0:
            self.history.clear()
            return
        self.history.append(exchange)
        if len(self.history) > history_limit:
            del self.history[: len(self.history) - history_limit]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.handle,
            "object": "conversation",
            "persona": self.persona_id,
            "status": self.status.value,
            "created_at": int(self.created_at),
            "exchanges": self.exchanges,
            "history": [e.to_dict() for e in self.history],
        }


@dataclass(frozen=True)
class ReplyFrame:
    """One frame of a backend reply.

    With ``cumulative`` set, ``text`` is the reply accumulated so far (the backend
    repeats the whole reply in every frame); otherwise it is just the new piece.
    An atomic reply arrives as a single final frame.
    """

    text: str
    is_final: bool = False
    cumulative: bool = True
