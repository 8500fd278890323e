"""Conversation continuity: pick, continue or recreate the backend conversation for a key."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from errors import BackendError, ContinuityError
from models import BackendConnection, ConversationStatus, SessionKey
from sessions import SessionRegistry
from upstream import BackendClient

log = logging.getLogger("character_proxy")


@dataclass
class Resolution:
    """Which conversation a request talks to, and how it got there."""

    key: SessionKey
    handle: str
    created: bool = False
    explicit: bool = False
    recovered: bool = False


class ConversationResolver:
    """
    Per-key state machine: Absent -> Active, Active -> Active,
    Active -> Stale -> Active (one fresh creation after a rejected continuation).

    Callers must hold the registry's per-key lock while resolving and until the
    exchange is committed, so a key never races two creations.
    """

    def __init__(self, backend: BackendClient, registry: SessionRegistry) -> None:
        self._backend = backend
        self._registry = registry

    async def resolve(
        self,
        connection: BackendConnection,
        key: SessionKey,
        explicit_handle: Optional[str] = None,
    ) -> Resolution:
        state = self._registry.get_conversation(key)
        cached = state.handle if state is not None and state.status == ConversationStatus.ACTIVE else None

        if explicit_handle:
            if explicit_handle == cached:
                return Resolution(key=key, handle=cached, explicit=True)
            # Explicit ids win for this request but only reach the cache via commit().
            try:
                handle = await self._backend.continue_conversation(
                    connection, key.persona_id, explicit_handle
                )
            except ContinuityError as e:
                log.warning(
                    "Explicit conversation rejected key=%s chat=%s err=%s; creating a new one",
                    key,
                    explicit_handle,
                    e.message,
                )
                return await self._create(connection, key, recovered=True)
            return Resolution(key=key, handle=handle, explicit=True)

        if cached:
            return Resolution(key=key, handle=cached)

        return await self._create(connection, key)

    async def recover(self, connection: BackendConnection, resolution: Resolution) -> Resolution:
        """Mark the current conversation stale and replace it with a fresh one."""
        key = resolution.key
        state = self._registry.get_conversation(key)
        if state is not None and state.handle == resolution.handle:
            state.status = ConversationStatus.STALE
        log.warning("Conversation stale key=%s chat=%s; recreating", key, resolution.handle)
        return await self._create(connection, key, recovered=True)

    async def start_new(self, connection: BackendConnection, key: SessionKey) -> Resolution:
        """Begin a fresh conversation regardless of cached state."""
        return await self._create(connection, key)

    def commit(self, resolution: Resolution) -> None:
        """Make ``resolution`` the cached Active conversation after a successful exchange."""
        state = self._registry.get_conversation(resolution.key)
        if state is not None and state.handle == resolution.handle:
            state.status = ConversationStatus.ACTIVE
            return
        self._registry.set_conversation(
            resolution.key,
            self._registry.new_conversation_state(resolution.key.persona_id, resolution.handle),
        )

    async def _create(
        self, connection: BackendConnection, key: SessionKey, *, recovered: bool = False
    ) -> Resolution:
        try:
            handle = await self._backend.create_conversation(connection, key.persona_id)
        except ContinuityError as e:
            raise BackendError(f"Failed to create conversation: {e.message}", code="conversation_create_failed")
        self._registry.set_conversation(
            key, self._registry.new_conversation_state(key.persona_id, handle)
        )
        log.info("Conversation created key=%s chat=%s recovered=%s", key, handle, recovered)
        return Resolution(key=key, handle=handle, created=True, recovered=recovered)
