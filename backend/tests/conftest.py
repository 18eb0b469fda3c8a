"""Shared fixtures for execution agent tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import asyncio
import json

import httpx
import pytest

from services.account_registry import AccountRegistry
from services.broker.simulator import generate_accounts


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


_CLOSED = object()


class FakeWebSocket:
    """In-memory stand-in for a ``websockets`` client connection."""

    def __init__(self, incoming=()):
        self.sent: list[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        for message in incoming:
            self._incoming.put_nowait(message)

    def push(self, message) -> None:
        if not isinstance(message, str):
            message = json.dumps(message)
        self._incoming.put_nowait(message)

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._incoming.put_nowait(_CLOSED)

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(data)

    async def recv(self):
        item = await self._incoming.get()
        if item is _CLOSED:
            raise ConnectionError("socket closed")
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def sent_json(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]


class RejectedHandshake(Exception):
    """Mimics ``websockets.InvalidStatus``: carries ``response.status_code``."""

    def __init__(self, status_code: int):
        super().__init__(f"server rejected WebSocket connection: HTTP {status_code}")
        self.response = type("Response", (), {"status_code": status_code})()


class RecordingTransport:
    """``httpx.MockTransport`` wrapper that keeps every request it served."""

    def __init__(self, handler):
        self.requests: list[httpx.Request] = []
        self._handler = handler
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    def client(self, base_url: str = "https://api.test") -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, transport=self.transport)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


async def wait_for(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def sample_accounts():
    """Gateway-shaped account payloads (ids 123456, 234567, ...)."""
    return generate_accounts()


@pytest.fixture
def registry(sample_accounts):
    reg = AccountRegistry()
    reg.initialize_accounts(sample_accounts)
    return reg
