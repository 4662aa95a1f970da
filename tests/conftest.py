"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import random
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from portfolio_chat.gateway import GatewayConfig, ModelGateway  # noqa: E402
from portfolio_chat.storage import InMemoryStore  # noqa: E402


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stand-in for asyncio.sleep that returns immediately and records delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class BrokenRedis:
    """redis.asyncio client double whose every call fails like an unreachable server."""

    async def get(self, key):
        raise RedisConnectionError("down")

    async def set(self, *args, **kwargs):
        raise RedisConnectionError("down")

    def pipeline(self, transaction=True):
        raise RedisConnectionError("down")

    async def delete(self, key):
        raise RedisConnectionError("down")

    async def ping(self):
        raise RedisConnectionError("down")

    async def aclose(self):
        return None


def gemini_reply(text: str) -> Dict[str, Any]:
    return {"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}]}


class FakeUpstream:
    """Scripted Gemini endpoint for httpx.MockTransport.

    ``script`` items are either a status code (answered with an empty error
    body), a string (answered 200 with that text), or an exception instance
    (raised to simulate transport failures). The last item repeats.
    """

    def __init__(self, *script: Any):
        self.script = list(script) or ["ok"]
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        idx = min(len(self.requests) - 1, len(self.script) - 1)
        item = self.script[idx]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return httpx.Response(item, json={"error": {"code": item}})
        return httpx.Response(200, json=gemini_reply(item))

    @property
    def calls(self) -> int:
        return len(self.requests)

    def last_prompt(self) -> str:
        body = json.loads(self.requests[-1].content)
        return body["contents"][0]["parts"][0]["text"]


def make_gateway(
    upstream: FakeUpstream,
    sleep: Optional[SleepRecorder] = None,
    **overrides: Any,
) -> ModelGateway:
    cfg = GatewayConfig(api_key="test-key", fragment_delay=0.0, **overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return ModelGateway(cfg, client=client, sleep=sleep or SleepRecorder(), rng=random.Random(7))


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def store(clock: FakeClock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


@pytest.fixture(scope="function")
def broken_redis() -> BrokenRedis:
    return BrokenRedis()


@pytest.fixture(scope="function")
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture(scope="function")
def gateway_factory(sleeper: SleepRecorder) -> Callable[..., ModelGateway]:
    def _make(*script: Any, **overrides: Any) -> ModelGateway:
        upstream = FakeUpstream(*script)
        gw = make_gateway(upstream, sleeper, **overrides)
        gw.upstream = upstream  # type: ignore[attr-defined]
        return gw

    return _make


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in ["PORTFOLIO_CHAT_CONFIG", "GEMINI_API_KEY", "GOOGLE_API_KEY", "REDIS_URL"]:
        monkeypatch.delenv(var, raising=False)
    yield
