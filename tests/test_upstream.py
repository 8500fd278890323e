"""Tests for the character.ai client: frame parsing, status mapping, HTTP calls."""

import json

import httpx
import pytest

from errors import AuthenticationError, BackendError, ContinuityError, RateLimitError
from upstream import CharacterAIClient, parse_reply_line, raise_for_backend_status


def ndjson(*objs) -> bytes:
    return "".join(json.dumps(o) + "\n" for o in objs).encode("utf-8")


class Recorder:
    """MockTransport handler that routes by path and remembers requests."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)


def user_ok(request):
    return httpx.Response(200, json={"user": {"user": {"username": "tester", "id": 7}}})


@pytest.fixture
def make_client(test_config):
    def _make(routes):
        recorder = Recorder(routes)
        return CharacterAIClient(test_config, transport=httpx.MockTransport(recorder)), recorder

    return _make


class TestParseReplyLine:
    def test_replies_frame(self):
        frame = parse_reply_line('{"replies": [{"text": "Hi"}], "is_final_chunk": false}')
        assert frame.text == "Hi"
        assert frame.is_final is False
        assert frame.cumulative is True

    def test_final_frame(self):
        frame = parse_reply_line('{"replies": [{"text": "Hi there"}], "is_final_chunk": true}')
        assert frame.is_final is True

    def test_alternate_shapes(self):
        assert parse_reply_line('{"response": "a"}').text == "a"
        assert parse_reply_line('{"text": "b"}').text == "b"

    def test_blank_and_textless_frames(self):
        assert parse_reply_line("   ") is None
        assert parse_reply_line('{"keepalive": true}') is None
        final = parse_reply_line('{"is_final_chunk": true}')
        assert final.text == "" and final.is_final

    @pytest.mark.parametrize("line", ["not json", "[1, 2]", '{"abort": true}', '{"error": "boom"}'])
    def test_bad_frames(self, line):
        with pytest.raises(BackendError):
            parse_reply_line(line)


class TestStatusMapping:
    def _resp(self, status, headers=None):
        return httpx.Response(status, headers=headers or {})

    def test_success_passes(self):
        raise_for_backend_status(self._resp(200), "", during="send")

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth(self, status):
        with pytest.raises(AuthenticationError):
            raise_for_backend_status(self._resp(status), "", during="auth")

    def test_rate_limit_with_retry_after(self):
        with pytest.raises(RateLimitError) as exc:
            raise_for_backend_status(self._resp(429, {"Retry-After": "3"}), "", during="send")
        assert exc.value.retry_after == 3.0

    def test_rate_limit_bad_retry_after(self):
        with pytest.raises(RateLimitError) as exc:
            raise_for_backend_status(self._resp(429, {"Retry-After": "soon"}), "", during="send")
        assert exc.value.retry_after is None

    @pytest.mark.parametrize("status", [400, 404, 410])
    def test_continuity_only_for_conversation_calls(self, status):
        with pytest.raises(ContinuityError):
            raise_for_backend_status(self._resp(status), "", during="continue")
        with pytest.raises(BackendError) as exc:
            raise_for_backend_status(self._resp(status), "", during="create")
        assert not isinstance(exc.value, ContinuityError)
        assert exc.value.code == f"backend_{status}"

    def test_server_error(self):
        with pytest.raises(BackendError, match="502"):
            raise_for_backend_status(self._resp(502), "bad gateway", during="send")


class TestCharacterAIClient:
    @pytest.mark.asyncio
    async def test_authenticate_and_close(self, make_client):
        client, rec = make_client({"/chat/user/": user_ok})
        conn = await client.authenticate("tok-123")
        assert conn.username == "tester"
        assert rec.requests[0].headers["authorization"] == "Token tok-123"
        assert rec.requests[0].headers["user-agent"] == "test-agent"

        await client.close(conn)
        assert conn.client.is_closed

    @pytest.mark.asyncio
    async def test_authenticate_rejected(self, make_client):
        client, _ = make_client({"/chat/user/": lambda r: httpx.Response(401, text="nope")})
        with pytest.raises(AuthenticationError):
            await client.authenticate("bad")

    @pytest.mark.asyncio
    async def test_authenticate_without_user(self, make_client):
        client, _ = make_client({"/chat/user/": lambda r: httpx.Response(200, json={"user": {}})})
        with pytest.raises(AuthenticationError):
            await client.authenticate("anon")

    @pytest.mark.asyncio
    async def test_create_and_continue(self, make_client):
        def create(request):
            assert json.loads(request.content) == {"character_external_id": "abc123"}
            return httpx.Response(200, json={"external_id": "chat-42"})

        def cont(request):
            body = json.loads(request.content)
            if body["history_external_id"] != "chat-42":
                return httpx.Response(404, text="no such chat")
            return httpx.Response(200, json={"external_id": "chat-42"})

        client, _ = make_client(
            {"/chat/user/": user_ok, "/chat/history/create/": create, "/chat/history/continue/": cont}
        )
        conn = await client.authenticate("tok")
        assert await client.create_conversation(conn, "abc123") == "chat-42"
        assert await client.continue_conversation(conn, "abc123", "chat-42") == "chat-42"
        with pytest.raises(ContinuityError):
            await client.continue_conversation(conn, "abc123", "chat-0")

    @pytest.mark.asyncio
    async def test_create_without_id(self, make_client):
        client, _ = make_client(
            {"/chat/user/": user_ok, "/chat/history/create/": lambda r: httpx.Response(200, json={})}
        )
        conn = await client.authenticate("tok")
        with pytest.raises(BackendError, match="no conversation id"):
            await client.create_conversation(conn, "abc123")

    @pytest.mark.asyncio
    async def test_stream_reply_ndjson(self, make_client):
        def streaming(request):
            body = json.loads(request.content)
            assert body == {"history_external_id": "chat-1", "character_external_id": "abc123", "text": "hi"}
            content = ndjson(
                {"replies": [{"text": "Hel"}], "is_final_chunk": False},
                {"replies": [{"text": "Hello"}], "is_final_chunk": True},
                {"replies": [{"text": "ignored"}], "is_final_chunk": False},
            )
            return httpx.Response(200, content=content, headers={"content-type": "application/x-ndjson"})

        client, _ = make_client({"/chat/user/": user_ok, "/chat/streaming/": streaming})
        conn = await client.authenticate("tok")
        frames = [f async for f in client.stream_reply(conn, "abc123", "chat-1", "hi")]
        assert [f.text for f in frames] == ["Hel", "Hello"]
        assert frames[-1].is_final

    @pytest.mark.asyncio
    async def test_stream_reply_atomic_json(self, make_client):
        def streaming(request):
            return httpx.Response(200, json={"replies": [{"text": "All at once"}]})

        client, _ = make_client({"/chat/user/": user_ok, "/chat/streaming/": streaming})
        conn = await client.authenticate("tok")
        frames = [f async for f in client.stream_reply(conn, "abc123", "chat-1", "hi")]
        assert len(frames) == 1
        assert frames[0].text == "All at once"
        assert frames[0].is_final

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error",
        [(404, ContinuityError), (429, RateLimitError), (401, AuthenticationError), (500, BackendError)],
    )
    async def test_stream_reply_errors(self, make_client, status, error):
        client, _ = make_client(
            {"/chat/user/": user_ok, "/chat/streaming/": lambda r: httpx.Response(status, text="err")}
        )
        conn = await client.authenticate("tok")
        with pytest.raises(error):
            async for _ in client.stream_reply(conn, "abc123", "chat-1", "hi"):
                pass

    @pytest.mark.asyncio
    async def test_transport_failure_is_backend_error(self, make_client):
        def broken(request):
            raise httpx.ConnectError("refused", request=request)

        client, _ = make_client({"/chat/user/": user_ok, "/chat/history/create/": broken})
        conn = await client.authenticate("tok")
        with pytest.raises(BackendError, match="transport error"):
            await client.create_conversation(conn, "abc123")

    @pytest.mark.asyncio
    async def test_closed_connection(self, make_client):
        client, _ = make_client({"/chat/user/": user_ok})
        conn = await client.authenticate("tok")
        await client.close(conn)
        with pytest.raises(BackendError, match="closed"):
            await client.create_conversation(conn, "abc123")

    def test_proxy_preference(self, test_config):
        from dataclasses import replace

        client = CharacterAIClient(replace(test_config, http_proxy="http://h:1", https_proxy="http://s:2"))
        assert client.get_proxy_url() == "http://s:2"
        client = CharacterAIClient(replace(test_config, http_proxy="http://h:1"))
        assert client.get_proxy_url() == "http://h:1"
        assert CharacterAIClient(test_config).get_proxy_url() is None
