"""Upstream character chat backend communication."""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from config import AppConfig
from errors import AuthenticationError, BackendError, ContinuityError, RateLimitError
from logger import mask_secret
from models import BackendConnection, ReplyFrame

log = logging.getLogger("character_proxy")


class BackendClient(abc.ABC):
    """Capabilities the proxy needs from a character chat backend."""

    @abc.abstractmethod
    async def authenticate(self, credential: str) -> BackendConnection:
        """Open an authenticated connection. Raises AuthenticationError on rejection."""

    @abc.abstractmethod
    async def close(self, connection: BackendConnection) -> None:
        """Release backend-side resources held by a connection."""

    @abc.abstractmethod
    async def create_conversation(self, connection: BackendConnection, persona_id: str) -> str:
        """Start a new conversation with a persona and return its handle."""

    @abc.abstractmethod
    async def continue_conversation(
        self, connection: BackendConnection, persona_id: str, handle: str
    ) -> str:
        """Reopen an existing conversation. Raises ContinuityError if the backend refuses."""

    @abc.abstractmethod
    def stream_reply(
        self, connection: BackendConnection, persona_id: str, handle: str, text: str
    ) -> AsyncIterator[ReplyFrame]:
        """Send ``text`` and yield reply frames in backend order."""


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def raise_for_backend_status(resp: httpx.Response, snippet: str, *, during: str) -> None:
    """Map a non-2xx backend status onto the error taxonomy."""
    status = resp.status_code
    if 200 <= status < 300:
        return
    detail = f"Backend {during} failed: {status} {snippet}".strip()
    if status in (401, 403):
        raise AuthenticationError(detail, code="backend_auth_failed")
    if status == 429:
        raise RateLimitError(detail, retry_after=_retry_after(resp))
    if during in ("continue", "send") and status in (400, 404, 410):
        raise ContinuityError(detail, code="conversation_rejected")
    raise BackendError(detail, code=f"backend_{status}")


def parse_reply_line(line: str) -> Optional[ReplyFrame]:
    """
    Parse one newline-delimited JSON frame of the streaming reply.

    Frames look like ``{"replies": [{"text": "..."}], "is_final_chunk": false}``
    where ``text`` is cumulative. Returns None for keepalive/blank lines.
    """
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except json.JSONDecodeError:
        raise BackendError(f"Malformed backend frame: {line[:200]!r}")
    if not isinstance(obj, dict):
        raise BackendError(f"Malformed backend frame: {line[:200]!r}")
    if obj.get("abort") or obj.get("error"):
        raise BackendError(f"Backend aborted reply: {obj.get('error') or 'abort'}")

    text = None
    replies = obj.get("replies")
    if isinstance(replies, list) and replies and isinstance(replies[0], dict):
        text = replies[0].get("text")
    elif isinstance(obj.get("response"), str):
        text = obj["response"]
    elif isinstance(obj.get("text"), str):
        text = obj["text"]

    is_final = bool(obj.get("is_final_chunk", False))
    if not isinstance(text, str):
        if is_final:
            return ReplyFrame(text="", is_final=True)
        return None
    return ReplyFrame(text=text, is_final=is_final)


class CharacterAIClient(BackendClient):
    """Handle communication with the character.ai chat API over httpx."""

    def __init__(self, config: AppConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport

    def get_headers(self, credential: str) -> Dict[str, str]:
        """Get default headers for the backend API."""
        return {
            "Authorization": f"Token {credential}",
            "Accept": "application/json",
            "Accept-Language": "en-US,en;q=0.9",
            "Content-Type": "application/json",
            "Origin": "https://character.ai",
            "Referer": "https://character.ai/",
            "User-Agent": self._config.user_agent,
        }

    def get_proxy_url(self) -> str | None:
        """HTTPS proxy if set, otherwise HTTP proxy if set, or None."""
        if self._config.https_proxy:
            return self._config.https_proxy
        if self._config.http_proxy:
            return self._config.http_proxy
        return None

    def _new_client(self, credential: str) -> httpx.AsyncClient:
        t = float(self._config.request_timeout_s)
        return httpx.AsyncClient(
            base_url=self._config.backend_base_url,
            headers=self.get_headers(credential),
            timeout=httpx.Timeout(connect=t, write=t, pool=t, read=t),
            proxy=None if self._transport is not None else self.get_proxy_url(),
            transport=self._transport,
        )

    @staticmethod
    def _client(connection: BackendConnection) -> httpx.AsyncClient:
        client = connection.client
        if not isinstance(client, httpx.AsyncClient) or client.is_closed:
            raise BackendError("Backend connection is closed")
        return client

    async def _post_json(
        self, connection: BackendConnection, path: str, payload: Dict[str, Any], *, during: str
    ) -> Dict[str, Any]:
        client = self._client(connection)
        t0 = time.time()
        try:
            resp = await client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise BackendError(f"Backend {during} timed out: {e!r}")
        except httpx.HTTPError as e:
            raise BackendError(f"Backend {during} transport error: {e!r}")
        dt = (time.time() - t0) * 1000
        log.info("Backend %s path=%s status=%s ms=%.1f", during, path, resp.status_code, dt)
        raise_for_backend_status(resp, resp.text[:500], during=during)
        try:
            data = resp.json()
        except ValueError:
            raise BackendError(f"Backend {during} returned non-JSON body: {resp.text[:200]!r}")
        if not isinstance(data, dict):
            raise BackendError(f"Backend {during} returned unexpected body")
        return data

    async def authenticate(self, credential: str) -> BackendConnection:
        client = self._new_client(credential)
        try:
            t0 = time.time()
            try:
                resp = await client.get("/chat/user/")
            except httpx.TimeoutException as e:
                raise BackendError(f"Backend authentication timed out: {e!r}")
            except httpx.HTTPError as e:
                raise BackendError(f"Backend authentication transport error: {e!r}")
            dt = (time.time() - t0) * 1000
            log.info(
                "Backend auth token=%s status=%s ms=%.1f",
                mask_secret(credential),
                resp.status_code,
                dt,
            )
            raise_for_backend_status(resp, resp.text[:200], during="auth")
            try:
                data = resp.json()
            except ValueError:
                data = {}
            user = data.get("user") if isinstance(data, dict) else None
            if isinstance(user, dict) and isinstance(user.get("user"), dict):
                user = user["user"]
            if not isinstance(user, dict) or not user:
                raise AuthenticationError("Backend did not return a user for this token")
        except BaseException:
            await client.aclose()
            raise
        return BackendConnection(credential=credential, user=user, client=client)

    async def close(self, connection: BackendConnection) -> None:
        client = connection.client
        if isinstance(client, httpx.AsyncClient) and not client.is_closed:
            await client.aclose()

    async def create_conversation(self, connection: BackendConnection, persona_id: str) -> str:
        data = await self._post_json(
            connection,
            "/chat/history/create/",
            {"character_external_id": persona_id},
            during="create",
        )
        handle = data.get("external_id")
        if not isinstance(handle, str) or not handle:
            raise BackendError("Backend create returned no conversation id")
        return handle

    async def continue_conversation(
        self, connection: BackendConnection, persona_id: str, handle: str
    ) -> str:
        data = await self._post_json(
            connection,
            "/chat/history/continue/",
            {"character_external_id": persona_id, "history_external_id": handle},
            during="continue",
        )
        resumed = data.get("external_id") or handle
        if resumed != handle:
            log.info("Backend continued conversation under a new id old=%s new=%s", handle, resumed)
        return str(resumed)

    async def stream_reply(
        self, connection: BackendConnection, persona_id: str, handle: str, text: str
    ) -> AsyncIterator[ReplyFrame]:
        client = self._client(connection)
        payload = {
            "history_external_id": handle,
            "character_external_id": persona_id,
            "text": text,
        }
        req = client.build_request("POST", "/chat/streaming/", json=payload)
        t0 = time.time()
        try:
            resp = await client.send(req, stream=True)
        except httpx.TimeoutException as e:
            raise BackendError(f"Backend send timed out: {e!r}")
        except httpx.HTTPError as e:
            raise BackendError(f"Backend send transport error: {e!r}")

        try:
            dt = (time.time() - t0) * 1000
            log.info("Backend send persona=%s chat=%s status=%s ms=%.1f", persona_id, handle, resp.status_code, dt)
            if resp.status_code != 200:
                snippet = await self.read_error_snippet(resp)
                raise_for_backend_status(resp, snippet, during="send")

            ctype = resp.headers.get("content-type", "")
            if "application/json" in ctype and "ndjson" not in ctype:
                # Atomic reply: one JSON document.
                raw = await resp.aread()
                frame = parse_reply_line(raw.decode("utf-8", errors="replace"))
                if frame is not None:
                    yield ReplyFrame(text=frame.text, is_final=True)
                return

            try:
                async for line in resp.aiter_lines():
                    frame = parse_reply_line(line)
                    if frame is None:
                        continue
                    yield frame
                    if frame.is_final:
                        return
            except httpx.TimeoutException as e:
                raise BackendError(f"Backend reply timed out: {e!r}")
            except httpx.HTTPError as e:
                raise BackendError(f"Backend reply transport error: {e!r}")
        finally:
            await resp.aclose()

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except Exception:
            return ""
        try:
            txt = raw.decode("utf-8", errors="replace")
        except Exception:
            return ""
        return txt[:limit]
