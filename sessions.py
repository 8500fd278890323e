"""Session registry: (credential, persona) -> backend connection and conversation state."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional

from errors import BackendError
from models import BackendConnection, ConversationState, Exchange, SessionKey
from upstream import BackendClient

log = logging.getLogger("character_proxy")

Clock = Callable[[], float]


@dataclass
class SessionEntry:
    """A live backend connection and when it was last used (registry clock)."""

    connection: BackendConnection
    last_used: float


class SessionRegistry:
    """
    Time-bounded cache of backend connections and conversation states.

    Connections expire after ``idle_timeout_s`` without use, conversation states
    after ``conversation_ttl_s``. Expiry is checked lazily on access and by
    ``sweep()``; an expired entry is simply re-created by the next request.

    Every key has a lock (``hold``) serializing the requests for that key.
    Independently, ``acquire`` authenticates at most once per key at a time:
    concurrent callers wait for and share the in-flight result. Failed
    authentications are never cached.
    """

    def __init__(
        self,
        backend: BackendClient,
        *,
        idle_timeout_s: float = 1800.0,
        conversation_ttl_s: float = 86400.0,
        history_limit: int = 20,
        auth_timeout_s: Optional[float] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._backend = backend
        self._idle_timeout_s = idle_timeout_s
        self._conversation_ttl_s = conversation_ttl_s
        self._history_limit = history_limit
        self._auth_timeout_s = auth_timeout_s
        self._clock = clock

        self._sessions: Dict[SessionKey, SessionEntry] = {}
        self._inflight: Dict[SessionKey, asyncio.Future] = {}
        self._conversations: Dict[SessionKey, ConversationState] = {}
        self._locks: Dict[SessionKey, asyncio.Lock] = {}

    @property
    def clock(self) -> Clock:
        return self._clock

    # ------------------------------------------------------------------
    # Per-key critical section
    # ------------------------------------------------------------------

    def _lock_for(self, key: SessionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def lock(self, key: SessionKey, timeout_s: Optional[float] = None) -> asyncio.Lock:
        """Acquire the per-key lock and return it; the caller must release it."""
        while True:
            lock = self._lock_for(key)
            if timeout_s is None:
                await lock.acquire()
            else:
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=timeout_s)
                except asyncio.TimeoutError:
                    raise BackendError(
                        f"Timed out after {timeout_s:.0f}s waiting for another request on this conversation",
                        code="session_busy",
                    )
            # The sweeper may have pruned this lock while we were waiting for it.
            if self._locks.get(key) is lock:
                return lock
            lock.release()

    @contextlib.asynccontextmanager
    async def hold(self, key: SessionKey, timeout_s: Optional[float] = None) -> AsyncIterator[None]:
        lock = await self.lock(key, timeout_s)
        try:
            yield
        finally:
            lock.release()

    def is_busy(self, key: SessionKey) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _expired(self, last: float, ttl: float, now: float) -> bool:
        return (now - last) > ttl

    async def acquire(self, key: SessionKey) -> BackendConnection:
        """Return the unexpired connection for ``key``, authenticating if needed."""
        now = self._clock()
        entry = self._sessions.get(key)
        if entry is not None:
            if not self._expired(entry.last_used, self._idle_timeout_s, now):
                entry.last_used = now
                return entry.connection
            log.info("Session expired; re-authenticating key=%s", key)
            await self.release(key)

        pending = self._inflight.get(key)
        if pending is not None:
            # shield: a cancelled waiter must not cancel the shared authentication
            connection = await asyncio.shield(pending)
            self._touch(key)
            return connection

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            if self._auth_timeout_s is not None:
                try:
                    connection = await asyncio.wait_for(
                        self._backend.authenticate(key.credential), timeout=self._auth_timeout_s
                    )
                except asyncio.TimeoutError:
                    raise BackendError(
                        f"Backend authentication timed out after {self._auth_timeout_s:.0f}s"
                    )
            else:
                connection = await self._backend.authenticate(key.credential)
        except BaseException as e:
            self._inflight.pop(key, None)
            if not fut.done():
                if isinstance(e, Exception):
                    fut.set_exception(e)
                    # Waiters re-raise it; retrieve so an unawaited future does not warn.
                    fut.exception()
                else:
                    fut.cancel()
            raise

        self._sessions[key] = SessionEntry(connection=connection, last_used=self._clock())
        self._inflight.pop(key, None)
        fut.set_result(connection)
        log.info("Session created key=%s user=%s", key, connection.username or "?")
        return connection

    def _touch(self, key: SessionKey) -> None:
        entry = self._sessions.get(key)
        if entry is not None:
            entry.last_used = self._clock()

    async def release(self, key: SessionKey) -> None:
        """Evict ``key`` and release its connection. Tolerates missing keys."""
        entry = self._sessions.pop(key, None)
        if entry is not None:
            await self._close(key, entry)

    async def _close(self, key: SessionKey, entry: SessionEntry) -> None:
        try:
            await self._backend.close(entry.connection)
        except Exception as e:
            log.warning("Failed to release backend connection key=%s err=%r", key, e)
        else:
            log.info("Session released key=%s", key)

    # ------------------------------------------------------------------
    # Conversation state
    # ------------------------------------------------------------------

    def get_conversation(self, key: SessionKey) -> Optional[ConversationState]:
        state = self._conversations.get(key)
        if state is None:
            return None
        if self._expired(state.last_activity, self._conversation_ttl_s, self._clock()):
            log.info("Conversation state expired key=%s chat=%s", key, state.handle)
            self._conversations.pop(key, None)
            return None
        return state

    def set_conversation(self, key: SessionKey, state: ConversationState) -> None:
        """Atomically replace the conversation state for ``key``."""
        self._conversations[key] = state

    def drop_conversation(self, key: SessionKey) -> Optional[ConversationState]:
        return self._conversations.pop(key, None)

    def record_exchange(self, key: SessionKey, exchange: Exchange) -> None:
        state = self._conversations.get(key)
        if state is not None:
            state.record(exchange, self._clock(), self._history_limit)

    def new_conversation_state(self, persona_id: str, handle: Optional[str]) -> ConversationState:
        return ConversationState(persona_id=persona_id, handle=handle, last_activity=self._clock())

    # ------------------------------------------------------------------
    # Introspection and lifecycle
    # ------------------------------------------------------------------

    def personas_for(self, credential: str) -> List[str]:
        """Personas this credential currently has a session or conversation for."""
        out = {k.persona_id for k in self._sessions if k.credential == credential}
        out.update(k.persona_id for k in self._conversations if k.credential == credential)
        return sorted(out)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: SessionKey) -> bool:
        return key in self._sessions

    async def sweep(self) -> int:
        """Evict idle sessions and stale conversation states. Returns evicted session count."""
        now = self._clock()
        # Evict everything first: a close yields, and a request may re-create a key meanwhile.
        expired = [
            (k, e)
            for k, e in self._sessions.items()
            if self._expired(e.last_used, self._idle_timeout_s, now) and not self.is_busy(k)
        ]
        for k, _ in expired:
            self._sessions.pop(k, None)
        for k, e in expired:
            await self._close(k, e)

        stale = [
            k
            for k, s in self._conversations.items()
            if self._expired(s.last_activity, self._conversation_ttl_s, now) and not self.is_busy(k)
        ]
        for k in stale:
            self._conversations.pop(k, None)

        for k in [k for k, lock in self._locks.items() if not lock.locked()]:
            if k not in self._sessions and k not in self._inflight:
                self._locks.pop(k, None)

        if expired or stale:
            log.info("Sweep evicted sessions=%d conversations=%d", len(expired), len(stale))
        return len(expired)

    async def run_sweeper(self, interval_s: float) -> None:
        """Periodic sweep loop, meant to run as a lifespan task."""
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.sweep()
            except Exception:
                log.exception("Session sweep failed")

    async def close_all(self) -> None:
        for k in list(self._sessions):
            await self.release(k)
        self._conversations.clear()
