"""OpenAI response envelopes and Server-Sent Events (SSE) streaming."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
import uuid
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Dict, Optional

from errors import InternalError, ProxyError

log = logging.getLogger("character_proxy")

# Usage numbers are an estimate, not a tokenization: the backend reports no
# token counts, so sizes are ceil(characters / CHARS_PER_TOKEN).
CHARS_PER_TOKEN = 4

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def estimate_tokens(text: str) -> int:
    """Approximate token count from character length."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def usage_block(prompt: str, completion: str) -> Dict[str, int]:
    prompt_tokens = estimate_tokens(prompt)
    completion_tokens = estimate_tokens(completion)
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def build_completion(
    completion_id: str,
    model: str,
    content: str,
    prompt: str,
    created: Optional[int] = None,
) -> Dict[str, Any]:
    """Build a non-streaming chat.completion object."""
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": int(time.time()) if created is None else created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": usage_block(prompt, content),
    }


def create_chunk_dict(
    completion_id: str,
    model: str,
    created: int,
    delta: dict | None = None,
    finish_reason: str | None = None,
) -> dict:
    """Create a standard OpenAI chat completion chunk dictionary."""
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish_reason}],
    }


def sse_data(obj: dict) -> bytes:
    """Encode dict as an SSE data event."""
    return ("data: " + json.dumps(obj, ensure_ascii=False) + "\n\n").encode("utf-8")


def sse_done() -> bytes:
    """SSE [DONE] event."""
    return b"data: [DONE]\n\n"


def conversation_headers(persona_id: str, conversation_id: Optional[str]) -> Dict[str, str]:
    """Headers that let a caller pin the next request to the same conversation."""
    headers = {"X-Character-Id": persona_id}
    if conversation_id:
        headers["X-Chat-Id"] = conversation_id
    return headers


class SSEStreamer:
    """Emit backend text fragments as chat.completion.chunk events."""

    @staticmethod
    async def stream_fragments(
        fragments: AsyncIterator[str],
        *,
        completion_id: str,
        model: str,
        created: int,
        req_id: str,
        on_complete: Callable[[], Awaitable[None]] | None = None,
    ) -> AsyncGenerator[bytes, None]:
        """
        One chunk per fragment in backend order (the first also carries the
        assistant role), then an empty delta with finish_reason "stop" and [DONE].

        ``on_complete`` runs only when the backend reply finished normally. A
        failure after the stream was committed ends it with an ``{"error": ...}``
        event instead of the stop chunk, then [DONE]. A client disconnect stops
        reading the backend.
        """
        first = True
        count = 0
        cancelled = False
        failure: Optional[Dict[str, Any]] = None
        try:
            try:
                async for fragment in fragments:
                    delta: Dict[str, Any] = {"content": fragment}
                    if first:
                        delta = {"role": "assistant", "content": fragment}
                        first = False
                    count += 1
                    yield sse_data(create_chunk_dict(completion_id, model, created, delta))
                if on_complete is not None:
                    await on_complete()
            except asyncio.CancelledError:
                cancelled = True
                log.info("Client disconnected mid-stream req_id=%s chunks=%d", req_id, count)
                raise
            except ProxyError as e:
                log.error("Stream aborted by backend failure req_id=%s chunks=%d err=%r", req_id, count, e)
                failure = e.to_payload()
            except Exception:
                log.exception("Stream aborted by unexpected error req_id=%s chunks=%d", req_id, count)
                failure = InternalError("Internal server error").to_payload()
            if not cancelled:
                if failure is None:
                    yield sse_data(create_chunk_dict(completion_id, model, created, {}, "stop"))
                else:
                    yield sse_data(failure)
                yield sse_done()
        finally:
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    log.exception("Failed to close backend reply req_id=%s", req_id)
