"""
Pytest configuration and fixtures for Price Stream tests.

FakeTransport stands in for a websockets connection and FakePriceServer
scripts the server side of the protocol (handshake replies, drops, refusals).
"""

import asyncio
import base64
import hashlib
import json
from typing import Any, Callable, Dict, List, Optional

import pytest
from websockets.exceptions import ConnectionClosedOK

from services.price_stream.authenticator import Authenticator
from services.price_stream.connection_manager import ConnectionManager
from services.price_stream.price_cache import PriceCache
from services.price_stream.snapshot_store import InMemorySnapshotStore
from services.price_stream.subscription_registry import SubscriptionRegistry

API_KEY = "test-api-key"

_CLOSED = object()


class FakeTransport:
    """In-memory stand-in for a websocket client connection."""

    def __init__(self, responder: Optional[Callable[[Dict[str, Any]], List[Any]]] = None):
        self.responder = responder
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def feed(self, message: Any) -> None:
        """Queue a frame from the server (dicts are JSON-encoded)."""
        self._incoming.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        message = json.loads(data)
        self.sent.append(message)
        if self.responder:
            for reply in self.responder(message):
                self.feed(reply)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self._finish(code, reason)

    def drop(self, code: int = 1006, reason: str = "") -> None:
        """Server-side / network close."""
        self._finish(code, reason)

    def _finish(self, code: int, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSED:
            self._incoming.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    # --- Inspection helpers ---

    def actions(self, action: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m.get("action") == action]

    def auth_messages(self) -> List[Dict[str, Any]]:
        return self.actions("authenticate")


class FakePriceServer:
    """
    Scripted price server

    Args:
        api_key: Key the server accepts (None = server does not ask for auth)
        mode: "ok" answers the handshake, "reject" answers auth_error,
              "silent" sends auth_required and then never answers
        refuse: Number of connection attempts to refuse before accepting
    """

    def __init__(self, api_key: Optional[str] = API_KEY, mode: str = "ok", refuse: int = 0):
        self.api_key = api_key
        self.mode = mode
        self.refuse = refuse
        self.connect_calls = 0
        self.transports: List[FakeTransport] = []
        self.challenge = "abc"
        self.challenge_id = "1"

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]

    async def connect(self, url: str) -> FakeTransport:
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.refuse > 0:
            self.refuse -= 1
            raise OSError("Connection refused")

        transport = FakeTransport(responder=self._respond)
        self.transports.append(transport)
        if self.api_key is not None:
            transport.feed({"type": "auth_required"})
        return transport

    def _respond(self, message: Dict[str, Any]) -> List[Dict[str, Any]]:
        if message.get("action") != "authenticate" or self.mode == "silent":
            return []

        auth_data = message["auth_data"]
        if self.mode == "reject":
            return [{"type": "auth_error", "message": "Invalid API key"}]

        if auth_data["type"] == "request_challenge":
            return [{"type": "challenge", "challenge": self.challenge, "challenge_id": self.challenge_id}]

        if auth_data["type"] == "challenge_response":
            expected = base64.b64encode(
                hashlib.sha256(f"{self.challenge}:{self.api_key}".encode()).digest()
            ).decode()
            if auth_data["signature"] == expected and auth_data["challenge_id"] == self.challenge_id:
                return [{"type": "authenticated", "session_token": "session-123"}]
            return [{"type": "auth_error", "message": "Bad signature"}]

        return []


async def _eventually(predicate: Callable[[], bool], timeout: float = 1.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.2fs" % timeout)
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    """Poll a predicate until it holds (fails the test after the timeout)."""
    return _eventually


@pytest.fixture
def fake_server() -> FakePriceServer:
    return FakePriceServer()


@pytest.fixture
def price_server():
    """Factory for servers with a non-default script (reject, silent, refuse=N)."""
    return FakePriceServer


@pytest.fixture
def snapshot_store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture
async def make_manager(snapshot_store):
    """Build a ConnectionManager wired to a fake server with fast timings."""
    managers: List[ConnectionManager] = []

    def _make(
        server: FakePriceServer,
        api_key: Optional[str] = API_KEY,
        url: str = "wss://prices.test/stream",
        **kwargs
    ) -> ConnectionManager:
        options = {
            "reconnect_interval": 0.05,
            "close_timeout": 0.1,
        }
        options.update(kwargs)
        auth_timeout = options.pop("auth_timeout", 0.5)

        manager = ConnectionManager(
            url=url,
            registry=SubscriptionRegistry(),
            price_cache=PriceCache(store=snapshot_store),
            authenticator=Authenticator(api_key=api_key, timeout=auth_timeout),
            connect_factory=server.connect,
            **options
        )
        managers.append(manager)
        return manager

    yield _make

    # Nothing may keep running after a test
    for manager in managers:
        await manager.disconnect()
        await manager._cache.flush()
