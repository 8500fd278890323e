"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Test environment setup (before the service module loads its config)
- An in-memory fake of the character chat backend with call counters
- A manually advanced clock for expiry tests
- An in-process ASGI client wired to a fresh app per test
"""

import asyncio
import os
import sys
from collections import Counter
from pathlib import Path
from typing import List, Optional, Union

import httpx
import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# The service loads config at import time.
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/character_proxy_test.log")
os.environ.setdefault("LOG_COLOR", "false")

from config import AppConfig  # noqa: E402
from errors import AuthenticationError, ContinuityError  # noqa: E402
from models import BackendConnection, ReplyFrame  # noqa: E402
from upstream import BackendClient  # noqa: E402


def cumulative_frames(text: str) -> List[ReplyFrame]:
    """Frames the way character.ai streams them: the whole reply so far, word by word."""
    words = text.split(" ")
    frames = []
    for i in range(1, len(words) + 1):
        frames.append(ReplyFrame(text=" ".join(words[:i]), is_final=(i == len(words))))
    return frames


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend(BackendClient):
    """Scriptable in-memory backend."""

    def __init__(self) -> None:
        self.calls: Counter = Counter()
        self.bad_tokens = {"bad-token"}
        self.rejected_handles: set = set()
        self.default_reply = "Hello there, traveler! How can I help?"
        # Each entry is consumed by one stream_reply call: frames or an exception.
        self.send_script: List[Union[List[ReplyFrame], Exception]] = []
        self.sent: list = []
        self.closed: List[BackendConnection] = []
        self.auth_delay = 0.0
        self.create_delay = 0.0
        self.close_delay = 0.0
        self.close_error: Optional[Exception] = None
        self.conversations: dict = {}
        self._next_id = 0

    async def authenticate(self, credential: str) -> BackendConnection:
        self.calls["authenticate"] += 1
        if self.auth_delay:
            await asyncio.sleep(self.auth_delay)
        if credential in self.bad_tokens:
            raise AuthenticationError("Backend auth failed: 401 Unauthorized")
        return BackendConnection(credential=credential, user={"username": "tester", "id": 7})

    async def close(self, connection: BackendConnection) -> None:
        self.calls["close"] += 1
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        if self.close_error is not None:
            raise self.close_error
        self.closed.append(connection)

    async def create_conversation(self, connection: BackendConnection, persona_id: str) -> str:
        self.calls["create"] += 1
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        self._next_id += 1
        handle = f"chat-{self._next_id}"
        self.conversations[handle] = persona_id
        return handle

    async def continue_conversation(self, connection: BackendConnection, persona_id: str, handle: str) -> str:
        self.calls["continue"] += 1
        if handle in self.rejected_handles or self.conversations.get(handle) != persona_id:
            raise ContinuityError(f"Backend continue failed: 404 unknown chat {handle}")
        return handle

    async def stream_reply(self, connection: BackendConnection, persona_id: str, handle: str, text: str):
        self.calls["send"] += 1
        self.sent.append((persona_id, handle, text))
        if handle in self.rejected_handles:
            raise ContinuityError(f"Backend send failed: 404 chat {handle} is gone")
        if self.send_script:
            item = self.send_script.pop(0)
            if isinstance(item, Exception):
                raise item
            frames = item
        else:
            frames = cumulative_frames(self.default_reply)
        for frame in frames:
            yield frame


@pytest.fixture
def test_config():
    """Create test configuration."""
    return AppConfig(
        backend_base_url="https://backend.test",
        user_agent="test-agent",
        http_proxy="",
        https_proxy="",
        model_prefixes=("character-ai:", "cai:"),
        model_delimiter=":",
        session_idle_timeout_s=1800.0,
        conversation_ttl_s=86400.0,
        sweep_interval_s=60.0,
        request_timeout_s=5.0,
        stream_idle_timeout_s=2.0,
        key_lock_timeout_s=5.0,
        rate_limit_retries=3,
        rate_limit_backoff_s=1.0,
        rate_limit_max_delay_s=30.0,
        history_limit=20,
        port=8000,
        log_level="DEBUG",
        max_request_bytes=2_000_000,
        log_path="/tmp/character_proxy_test.log",
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def app(test_config, backend, clock, fake_sleep):
    from character_proxy_service import create_app

    return create_app(test_config, backend=backend, clock=clock, sleep=fake_sleep)


@pytest.fixture
async def client(app):
    """In-process ASGI client (httpx.ASGITransport, no TestClient)."""
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
