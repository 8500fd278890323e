"""
Character chat proxy (OpenAI-compatible) -> character.ai as upstream.

Request flow:
  bearer token + model ("persona" or "persona:conversation")
    -> session registry (one authenticated backend connection per token+persona)
    -> continuity resolver (create / continue / recreate the backend conversation)
    -> exchange engine (send the last user message, normalize reply frames)
    -> chat.completion JSON or chat.completion.chunk SSE stream

Response headers X-Chat-Id / X-Character-Id carry the resolved conversation so
a caller can continue it with model="<persona>:<chat id>".
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Receive, Scope, Send

from config import AppConfig, load_config
from continuity import ConversationResolver, Resolution
from credentials import parse_bearer, parse_chat_request, parse_model
from errors import AuthenticationError, InternalError, ProxyError, ValidationError, error_payload
from exchange import MessageExchangeEngine, PendingReply
from logger import mask_secret, setup_logging
from models import Exchange, ParsedRequest, SessionKey
from sessions import Clock, SessionRegistry
from sse_handler import (
    SSE_HEADERS,
    SSEStreamer,
    build_completion,
    conversation_headers,
    estimate_tokens,
    new_completion_id,
)
from upstream import BackendClient, CharacterAIClient
from utils import dump_config, load_env_files

# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate()

# Initialize logging
log = setup_logging(config.log_path)
dump_config(config)


@dataclass
class ProxyRuntime:
    """Everything a request handler needs; one per application instance."""

    config: AppConfig
    backend: BackendClient
    registry: SessionRegistry
    resolver: ConversationResolver
    engine: MessageExchangeEngine


def build_runtime(
    cfg: AppConfig,
    backend: Optional[BackendClient] = None,
    *,
    clock: Optional[Clock] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> ProxyRuntime:
    backend = backend or CharacterAIClient(cfg)
    registry = SessionRegistry(
        backend,
        idle_timeout_s=cfg.session_idle_timeout_s,
        conversation_ttl_s=cfg.conversation_ttl_s,
        history_limit=cfg.history_limit,
        auth_timeout_s=cfg.request_timeout_s,
        clock=clock or time.monotonic,
    )
    resolver = ConversationResolver(backend, registry)
    engine = MessageExchangeEngine(
        backend,
        resolver,
        rate_limit_retries=cfg.rate_limit_retries,
        rate_limit_backoff_s=cfg.rate_limit_backoff_s,
        rate_limit_max_delay_s=cfg.rate_limit_max_delay_s,
        idle_timeout_s=cfg.stream_idle_timeout_s,
        sleep=sleep or asyncio.sleep,
    )
    return ProxyRuntime(config=cfg, backend=backend, registry=registry, resolver=resolver, engine=engine)


class _KeyLease:
    """Idempotent release of a per-key lock."""

    def __init__(self, lock: asyncio.Lock) -> None:
        self._lock = lock
        self._released = False

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._lock.release()


class LeasedStreamingResponse(StreamingResponse):
    """StreamingResponse that always runs ``on_close`` once the response ends.

    Runs even when the body iterator was never started (client gone before the
    first byte), which a generator's own ``finally`` cannot guarantee.
    """

    def __init__(self, content: Any, *, on_close: Callable[[], Awaitable[None]], **kwargs: Any) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._on_close()


PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Max-Age": "600",
}


class PreflightMiddleware:
    """Answer every OPTIONS request, browser preflight or not, with an empty 200.

    Must be the outermost middleware, ahead of CORSMiddleware.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and scope["method"] == "OPTIONS":
            requested = Headers(scope=scope).get("access-control-request-headers")
            headers = {**PREFLIGHT_HEADERS, "Access-Control-Allow-Headers": requested or "*"}
            await Response(status_code=200, headers=headers)(scope, receive, send)
            return
        await self.app(scope, receive, send)



def _runtime(request: Request) -> ProxyRuntime:
    return request.app.state.runtime


def _request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or uuid.uuid4().hex
    )


def _check_content_length(request: Request, max_bytes: int) -> None:
    """Basic request size guard."""
    cl = request.headers.get("content-length")
    if not cl:
        return
    try:
        n = int(cl)
    except ValueError:
        raise StarletteHTTPException(status_code=400, detail=f"Invalid Content-Length header: {cl!r}")
    if n < 0:
        raise StarletteHTTPException(status_code=400, detail="Invalid Content-Length: must be non-negative")
    if n > max_bytes:
        raise StarletteHTTPException(status_code=413, detail=f"Request too large: {n} bytes (max {max_bytes})")


async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body: expected object")
    return body


async def _start_exchange(rt: ProxyRuntime, parsed: ParsedRequest) -> PendingReply:
    """Acquire session, resolve conversation, send. Caller holds the key lock."""
    key = parsed.key
    try:
        connection = await rt.registry.acquire(key)
        resolution = await rt.resolver.resolve(connection, key, parsed.conversation_id)
        return await rt.engine.start(connection, resolution, parsed.user_message)
    except AuthenticationError:
        # The token stopped working mid-session: drop the connection, never cache the failure.
        await rt.registry.release(key)
        raise


def _commit(rt: ProxyRuntime, parsed: ParsedRequest, resolution: Resolution, content: str) -> None:
    rt.resolver.commit(resolution)
    rt.registry.record_exchange(
        parsed.key,
        Exchange(
            input_text=parsed.user_message,
            output_text=content,
            prompt_tokens=estimate_tokens(parsed.user_message),
            completion_tokens=estimate_tokens(content),
        ),
    )


router = APIRouter()


@router.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@router.post("/v1/chat/completions")
@router.post("/chat/completions")
async def chat_completions(request: Request) -> Response:
    """Handle chat completion requests."""
    rt = _runtime(request)
    req_id = _request_id(request)

    _check_content_length(request, rt.config.max_request_bytes)
    parse_bearer(request.headers.get("authorization"))
    body = await _read_json(request)
    parsed = parse_chat_request(
        request.headers, body, rt.config.model_prefixes, rt.config.model_delimiter
    )
    key = parsed.key

    log.info(
        "Incoming chat req_id=%s token=%s persona=%s chat=%s stream=%s",
        req_id,
        mask_secret(parsed.credential),
        parsed.persona_id,
        parsed.conversation_id,
        parsed.stream,
    )

    lease = _KeyLease(await rt.registry.lock(key, rt.config.key_lock_timeout_s))
    try:
        reply = await _start_exchange(rt, parsed)
    except BaseException:
        lease.release()
        raise

    resolution = reply.resolution
    headers = conversation_headers(key.persona_id, resolution.handle)
    completion_id = new_completion_id()
    created = int(time.time())

    if not parsed.stream:
        try:
            content = await reply.collect()
            _commit(rt, parsed, resolution, content)
        finally:
            lease.release()
        log.info(
            "Chat done req_id=%s persona=%s chat=%s created=%s recovered=%s chars=%d",
            req_id,
            key.persona_id,
            resolution.handle,
            resolution.created,
            resolution.recovered,
            len(content),
        )
        return JSONResponse(
            build_completion(completion_id, parsed.model, content, parsed.user_message, created),
            headers=headers,
        )

    async def on_complete() -> None:
        _commit(rt, parsed, resolution, reply.text)
        log.info(
            "Chat stream done req_id=%s persona=%s chat=%s chars=%d",
            req_id,
            key.persona_id,
            resolution.handle,
            len(reply.text),
        )

    async def on_close() -> None:
        try:
            await reply.aclose()
        finally:
            lease.release()

    return LeasedStreamingResponse(
        SSEStreamer.stream_fragments(
            reply.fragments(),
            completion_id=completion_id,
            model=parsed.model,
            created=created,
            req_id=req_id,
            on_complete=on_complete,
        ),
        on_close=on_close,
        media_type="text/event-stream",
        headers={**SSE_HEADERS, **headers},
    )


@router.get("/v1/models")
async def v1_models(request: Request) -> Dict[str, Any]:
    """List personas the caller currently holds a session or conversation for."""
    rt = _runtime(request)
    credential = parse_bearer(request.headers.get("authorization"))
    return {
        "object": "list",
        "data": [
            {"id": persona, "object": "model", "owned_by": "character-ai"}
            for persona in rt.registry.personas_for(credential)
        ],
    }


@router.get("/v1/auth/verify")
async def verify_token(request: Request) -> Dict[str, Any]:
    """Check a token against the backend without caching the connection."""
    rt = _runtime(request)
    credential = parse_bearer(request.headers.get("authorization"))
    connection = await rt.backend.authenticate(credential)
    try:
        return {"success": True, "authenticated": True, "user": connection.user}
    finally:
        try:
            await rt.backend.close(connection)
        except Exception as e:
            log.warning("Failed to close verification connection err=%r", e)


def _conversation_key(request: Request, persona: str) -> SessionKey:
    rt = _runtime(request)
    credential = parse_bearer(request.headers.get("authorization"))
    persona_id, _ = parse_model(persona, rt.config.model_prefixes, rt.config.model_delimiter)
    return SessionKey(credential, persona_id)


@router.get("/v1/conversations/{persona}")
async def list_conversations(request: Request, persona: str) -> Dict[str, Any]:
    rt = _runtime(request)
    key = _conversation_key(request, persona)
    async with rt.registry.hold(key, rt.config.key_lock_timeout_s):
        state = rt.registry.get_conversation(key)
        data = [state.to_dict()] if state is not None else []
    return {"object": "list", "data": data}


@router.post("/v1/conversations/{persona}")
async def create_conversation(request: Request, persona: str) -> Response:
    """Start a fresh backend conversation and make it the active one."""
    rt = _runtime(request)
    key = _conversation_key(request, persona)
    async with rt.registry.hold(key, rt.config.key_lock_timeout_s):
        try:
            connection = await rt.registry.acquire(key)
            resolution = await rt.resolver.start_new(connection, key)
        except AuthenticationError:
            await rt.registry.release(key)
            raise
        rt.resolver.commit(resolution)
        state = rt.registry.get_conversation(key)
    body = state.to_dict() if state is not None else {"id": resolution.handle, "object": "conversation"}
    return JSONResponse(body, headers=conversation_headers(key.persona_id, resolution.handle))


@router.delete("/v1/conversations/{persona}")
async def delete_conversation(request: Request, persona: str) -> Dict[str, Any]:
    """Forget the cached conversation locally; the backend keeps it."""
    rt = _runtime(request)
    key = _conversation_key(request, persona)
    async with rt.registry.hold(key, rt.config.key_lock_timeout_s):
        state = rt.registry.drop_conversation(key)
    return {
        "deleted": state is not None,
        "id": state.handle if state is not None else None,
        "object": "conversation",
    }


def _http_error_type(status: int) -> str:
    return {
        400: "invalid_request_error",
        401: "authentication_error",
        404: "not_found",
        405: "method_not_allowed",
        413: "request_too_large",
    }.get(status, "proxy_error")


def create_app(
    cfg: Optional[AppConfig] = None,
    *,
    backend: Optional[BackendClient] = None,
    clock: Optional[Clock] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> FastAPI:
    """Build the FastAPI application around a fresh runtime."""
    cfg = cfg or config
    runtime = build_runtime(cfg, backend, clock=clock, sleep=sleep)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(
            runtime.registry.run_sweeper(cfg.sweep_interval_s),
            name="character_proxy.session_sweeper",
        )

        yield  # Application is running

        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await runtime.registry.close_all()

    app = FastAPI(title="character-proxy-service", version="1.0.0", lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Chat-Id", "X-Character-Id"],
    )
    app.add_middleware(PreflightMiddleware)

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        log.warning(
            "Request failed path=%s status=%s type=%s message=%s",
            request.url.path,
            exc.status_code,
            exc.error_type,
            exc.message,
        )
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            error_payload(str(exc.detail), _http_error_type(exc.status_code)),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        log.exception("Unhandled error path=%s", request.url.path)
        err = InternalError("Internal server error")
        return JSONResponse(err.to_payload(), status_code=err.status_code)

    app.include_router(router)
    return app


app = create_app(config)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
