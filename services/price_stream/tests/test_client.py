"""
Tests for the StreamingClient facade and its factories
"""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.price_stream.client import (
    StreamingClient,
    create_snapshot_store,
    create_streaming_client,
)
from services.price_stream.snapshot_store import (
    InMemorySnapshotStore,
    JsonFileSnapshotStore,
    RedisSnapshotStore,
)
from shared.config.settings import Settings
from shared.enums.connection import ConnectionState
from shared.utils.redis_client import RedisClient


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


@pytest.fixture
async def make_client(fake_server, snapshot_store):
    clients = []

    def _make(**kwargs) -> StreamingClient:
        options = {
            "url": "wss://prices.test/stream",
            "api_key": fake_server.api_key,
            "snapshot_store": snapshot_store,
            "reconnect_interval": 0.05,
            "close_timeout": 0.1,
            "auth_timeout": 0.5,
            "connect_factory": fake_server.connect,
        }
        options.update(kwargs)
        client = StreamingClient(**options)
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.stop()


class TestLifecycle:

    async def test_start_loads_snapshot_then_connects(self, make_client, fake_server, snapshot_store, eventually):
        snapshot_store.snapshot = {"data": {"AAPL": 190.5}, "timestamp": int(time.time() * 1000)}
        client = make_client()

        await client.start()

        # Persisted prices are readable before the first live update
        assert client.get_price("AAPL") == 190.5
        assert client.get_entry("AAPL").live is False
        await eventually(lambda: client.is_authenticated)
        assert fake_server.connect_calls == 1

    async def test_start_is_idempotent(self, make_client, fake_server, eventually):
        client = make_client()

        await client.start()
        await client.start()
        await eventually(lambda: client.is_authenticated)

        assert fake_server.connect_calls == 1
        assert client.is_started

    async def test_stop_closes_transport_normally(self, make_client, fake_server, eventually):
        client = make_client()
        await client.start()
        await eventually(lambda: client.is_authenticated)

        await client.stop()

        assert fake_server.last.close_code == 1000
        assert client.status().state == ConnectionState.DISCONNECTED
        assert not client.is_started

    async def test_stop_writes_pending_snapshot(self, make_client, fake_server, snapshot_store, eventually):
        client = make_client()
        await client.start()
        await eventually(lambda: client.is_authenticated)

        fake_server.last.feed({"type": "price_update", "symbol": "AAPL", "price": 191.0})
        await eventually(lambda: client.get_price("AAPL") == 191.0)
        await client.stop()

        assert snapshot_store.snapshot["data"] == {"AAPL": 191.0}

    async def test_async_context_manager(self, make_client, fake_server, eventually):
        async with make_client() as client:
            await eventually(lambda: client.is_authenticated)

        assert fake_server.last.close_code == 1000
        assert not client.is_connected

    async def test_disabled_client_serves_cached_prices_only(self, make_client, fake_server, snapshot_store):
        snapshot_store.snapshot = {"data": {"MSFT": 410.0}, "timestamp": int(time.time() * 1000)}
        client = make_client(enabled=False)

        await client.start()

        assert client.get_price("MSFT") == 410.0
        assert fake_server.connect_calls == 0
        assert client.status().enabled is False

    async def test_unavailable_redis_does_not_block_start(self, make_client, fake_server, eventually):
        redis_client = MagicMock()
        redis_client.is_connected = False
        redis_client.connect = AsyncMock(side_effect=ConnectionError("redis down"))
        client = make_client(redis_client=redis_client)

        await client.start()

        await eventually(lambda: client.is_authenticated)
        redis_client.connect.assert_awaited_once()


class TestSubscriptionsAndPrices:

    async def test_subscribe_before_start_is_flushed_on_authentication(self, make_client, fake_server, eventually):
        client = make_client()
        assert await client.subscribe([" AAPL", "MSFT", "AAPL"]) == ["AAPL", "MSFT"]

        await client.start()
        await eventually(lambda: client.is_authenticated)

        assert fake_server.last.actions("subscribe") == [
            {"action": "subscribe", "symbols": ["AAPL", "MSFT"]}
        ]
        assert client.subscribed_symbols == {"AAPL", "MSFT"}

    async def test_unsubscribe_while_connected(self, make_client, fake_server, eventually):
        client = make_client()
        await client.subscribe(["AAPL", "MSFT"])
        await client.start()
        await eventually(lambda: client.is_authenticated)

        assert await client.unsubscribe([" MSFT ", "GOOG"]) == ["MSFT"]
        assert fake_server.last.actions("unsubscribe") == [{"action": "unsubscribe", "symbols": ["MSFT"]}]

    async def test_get_prices_for_requested_symbols(self, make_client, fake_server, eventually):
        client = make_client()
        await client.start()
        await eventually(lambda: client.is_authenticated)

        fake_server.last.feed({"type": "price_update", "symbol": "AAPL", "price": 190.5})
        await eventually(lambda: client.get_price("AAPL") is not None)

        assert client.get_prices([" AAPL", "MSFT"]) == {"AAPL": 190.5, "MSFT": None}
        assert client.prices == {"AAPL": 190.5}

    async def test_symbol_case_is_kept_from_snapshot_to_lookup(self, make_client, fake_server, snapshot_store, eventually):
        snapshot_store.snapshot = {"data": {"btcusdt": 1.5}, "timestamp": int(time.time() * 1000)}
        client = make_client()
        await client.start()

        assert client.prices == {"btcusdt": 1.5}
        assert client.get_price("btcusdt") == 1.5
        assert client.get_prices(["btcusdt", "BTCUSDT"]) == {"btcusdt": 1.5, "BTCUSDT": None}

        await eventually(lambda: client.is_authenticated)
        fake_server.last.feed({"type": "price_update", "symbol": "btcusdt", "price": 1.6})

        await eventually(lambda: client.get_price("btcusdt") == 1.6)
        assert client.get_entry("btcusdt").live is True
        assert "BTCUSDT" not in client.prices

    async def test_price_listener(self, make_client, fake_server, eventually):
        client = make_client()
        seen = []
        client.add_price_listener(seen.append)
        await client.start()
        await eventually(lambda: client.is_authenticated)

        fake_server.last.feed({"type": "price_update", "symbol": "TSLA", "price": 250.0})
        await eventually(lambda: len(seen) == 1)

        assert seen[0].symbol == "TSLA"
        assert seen[0].live is True

    async def test_status_listener(self, make_client, eventually):
        client = make_client()
        states = []
        client.add_status_listener(lambda status: states.append(status.state))

        await client.start()
        await eventually(lambda: client.is_authenticated)

        assert ConnectionState.AUTHENTICATED in states

    async def test_stats(self, make_client, eventually):
        client = make_client()
        await client.subscribe(["AAPL"])
        await client.start()
        await eventually(lambda: client.is_authenticated)

        stats = client.get_stats()

        assert stats["state"] == "AUTHENTICATED"
        assert stats["connections"] == 1
        assert stats["subscribed_symbols_count"] == 1
        assert stats["authentication"]["handshakes_succeeded"] == 1
        assert stats["subscription_messages"]["resyncs"] == 1


class TestFactories:

    def test_memory_backend(self):
        store, redis_client = create_snapshot_store(make_settings(price_cache_backend="memory"))
        assert isinstance(store, InMemorySnapshotStore)
        assert redis_client is None

    def test_file_backend(self, tmp_path):
        path = str(tmp_path / "prices.json")
        store, redis_client = create_snapshot_store(make_settings(price_cache_backend="file", price_cache_path=path))

        assert isinstance(store, JsonFileSnapshotStore)
        assert str(store.path) == path
        assert redis_client is None

    def test_redis_backend(self):
        settings = make_settings(price_cache_backend="REDIS", redis_host="cache", price_cache_redis_key="k")

        store, redis_client = create_snapshot_store(settings)

        assert isinstance(store, RedisSnapshotStore)
        assert isinstance(redis_client, RedisClient)
        assert redis_client.redis_url == "redis://cache:6379/0"
        assert store.key == "k"

    def test_unknown_backend_falls_back_to_memory(self):
        store, _ = create_snapshot_store(make_settings(price_cache_backend="sqlite"))
        assert isinstance(store, InMemorySnapshotStore)

    def test_streaming_client_from_settings(self):
        settings = make_settings(
            price_stream_url="  wss://prices.example.com/ws  ",
            price_stream_api_key="   ",
            price_cache_backend="memory",
            price_cache_expiry_hours=2,
            price_stream_reconnect_interval=3.0,
            price_stream_auth_timeout=4.0,
        )

        client = create_streaming_client(settings)

        assert client.connection.url == "wss://prices.example.com/ws"
        assert client.authenticator.api_key is None
        assert client.authenticator.timeout == 4.0
        assert client.connection.reconnect_interval == 3.0
        assert client.cache._expiry_seconds == 2 * 3600
        assert not client.is_started
