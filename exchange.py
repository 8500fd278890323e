"""Message exchange: send the user message, normalize backend frames into text fragments."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncGenerator, AsyncIterator, Awaitable, Callable, Optional

from continuity import ConversationResolver, Resolution
from errors import BackendError, ContinuityError, RateLimitError
from models import BackendConnection, ReplyFrame
from upstream import BackendClient

log = logging.getLogger("character_proxy")

Sleep = Callable[[float], Awaitable[None]]


class DeltaReader:
    """Turn backend reply frames into ordered, non-empty text deltas."""

    def __init__(self, frames: AsyncIterator[ReplyFrame], idle_timeout_s: Optional[float] = None) -> None:
        self._frames = frames
        self._idle_timeout_s = idle_timeout_s
        self._text = ""
        self._done = False

    @property
    def text(self) -> str:
        """Concatenation of every delta returned so far."""
        return self._text

    @property
    def done(self) -> bool:
        return self._done

    async def _next_frame(self) -> Optional[ReplyFrame]:
        try:
            if self._idle_timeout_s is None:
                return await self._frames.__anext__()
            return await asyncio.wait_for(self._frames.__anext__(), timeout=self._idle_timeout_s)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError:
            raise BackendError(
                f"Backend reply stalled for more than {self._idle_timeout_s:.0f}s", code="backend_timeout"
            )

    def _delta(self, frame: ReplyFrame) -> str:
        if not frame.cumulative:
            return frame.text
        if frame.text.startswith(self._text):
            return frame.text[len(self._text):]
        # Emitted fragments cannot be taken back; keep the joined text consistent.
        log.warning(
            "Backend frame does not extend the reply so far; dropping it (seen=%d new=%d)",
            len(self._text),
            len(frame.text),
        )
        return ""

    async def next_delta(self) -> Optional[str]:
        """Next non-empty fragment, or None once the reply is complete."""
        while not self._done:
            frame = await self._next_frame()
            if frame is None:
                self._done = True
                break
            delta = self._delta(frame)
            if frame.is_final:
                self._done = True
            if delta:
                self._text += delta
                return delta
        return None

    async def aclose(self) -> None:
        self._done = True
        aclose = getattr(self._frames, "aclose", None)
        if aclose is not None:
            with contextlib.suppress(Exception):
                await aclose()


class PendingReply:
    """A reply whose first fragment has already arrived; the rest is read lazily."""

    def __init__(self, resolution: Resolution, first: str, reader: DeltaReader) -> None:
        self.resolution = resolution
        self._first = first
        self._reader = reader

    @property
    def text(self) -> str:
        return self._reader.text

    async def fragments(self) -> AsyncGenerator[str, None]:
        try:
            yield self._first
            while True:
                delta = await self._reader.next_delta()
                if delta is None:
                    return
                yield delta
        finally:
            await self._reader.aclose()

    async def collect(self) -> str:
        parts = [fragment async for fragment in self.fragments()]
        return "".join(parts)

    async def aclose(self) -> None:
        await self._reader.aclose()


class MessageExchangeEngine:
    """
    Send one message and obtain the reply.

    The reply is prebuffered up to its first non-empty fragment, so every
    failure that can still be retried happens before a response is committed:
    - ContinuityError: one retry on a freshly created conversation.
    - RateLimitError (HTTP 429): up to ``rate_limit_retries`` retries with
      exponential backoff (``Retry-After`` wins when the backend sends one),
      every delay capped at ``rate_limit_max_delay_s``.
    Everything else propagates. A reply without text is a BackendError.
    """

    def __init__(
        self,
        backend: BackendClient,
        resolver: ConversationResolver,
        *,
        rate_limit_retries: int = 3,
        rate_limit_backoff_s: float = 1.0,
        rate_limit_max_delay_s: float = 30.0,
        idle_timeout_s: Optional[float] = 30.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._resolver = resolver
        self._rate_limit_retries = rate_limit_retries
        self._rate_limit_backoff_s = rate_limit_backoff_s
        self._rate_limit_max_delay_s = rate_limit_max_delay_s
        self._idle_timeout_s = idle_timeout_s
        self._sleep = sleep

    def _backoff(self, attempt: int, err: RateLimitError) -> float:
        if err.retry_after is not None:
            delay = err.retry_after
        else:
            delay = self._rate_limit_backoff_s * (2 ** attempt)
        return min(delay, self._rate_limit_max_delay_s)

    async def start(
        self, connection: BackendConnection, resolution: Resolution, text: str
    ) -> PendingReply:
        recovered = False
        rate_attempts = 0
        while True:
            frames = self._backend.stream_reply(
                connection, resolution.key.persona_id, resolution.handle, text
            )
            reader = DeltaReader(frames, self._idle_timeout_s)
            try:
                first = await reader.next_delta()
            except ContinuityError as e:
                await reader.aclose()
                if recovered:
                    raise BackendError(
                        f"Conversation rejected again after recreation: {e.message}",
                        code="conversation_rejected",
                    )
                recovered = True
                resolution = await self._resolver.recover(connection, resolution)
                continue
            except RateLimitError as e:
                await reader.aclose()
                if rate_attempts >= self._rate_limit_retries:
                    raise BackendError(
                        f"Backend rate limit persisted after {rate_attempts} retries: {e.message}",
                        code="rate_limited",
                    )
                delay = self._backoff(rate_attempts, e)
                rate_attempts += 1
                log.warning(
                    "Backend rate limited key=%s attempt=%d/%d sleeping=%.2fs",
                    resolution.key,
                    rate_attempts,
                    self._rate_limit_retries,
                    delay,
                )
                await self._sleep(delay)
                continue
            except BaseException:
                await reader.aclose()
                raise

            if first is None:
                await reader.aclose()
                raise BackendError("Backend returned no reply text", code="empty_reply")
            return PendingReply(resolution, first, reader)

    async def exchange(self, connection: BackendConnection, resolution: Resolution, text: str) -> tuple[Resolution, str]:
        """Non-streaming helper: the final resolution and the complete reply text."""
        reply = await self.start(connection, resolution, text)
        full = await reply.collect()
        return reply.resolution, full
