"""
Streaming Client

Facade composing PriceCache, Authenticator, SubscriptionRegistry and
ConnectionManager. This is the only object consumers talk to:

    client = create_streaming_client(settings)
    await client.start()
    await client.subscribe(["AAPL", "MSFT"])
    client.get_prices(["AAPL", "MSFT"])   # {"AAPL": 190.5, "MSFT": None}
    client.status()                       # ConnectionStatus
    await client.stop()
"""

from typing import Any, Dict, Iterable, List, Optional, Set

from shared.config.settings import Settings
from shared.models.stream import ConnectionStatus, PriceEntry
from shared.utils.logger import get_logger
from shared.utils.redis_client import RedisClient

from .authenticator import Authenticator
from .connection_manager import ConnectFactory, ConnectionManager, StatusListener
from .price_cache import PriceCache, PriceListener
from .snapshot_store import (
    InMemorySnapshotStore,
    JsonFileSnapshotStore,
    RedisSnapshotStore,
    SnapshotStore,
)
from .subscription_registry import SubscriptionRegistry, normalize_symbols

logger = get_logger(__name__, component="client")


class StreamingClient:
    """
    Real-time price streaming client

    Shared by every consumer of one process: the symbol set and price map
    are common to all of them. Consumers only read prices; mutation goes
    through subscribe()/unsubscribe() and inbound messages.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        enabled: bool = True,
        snapshot_store: Optional[SnapshotStore] = None,
        cache_expiry_seconds: float = 24 * 60 * 60,
        auth_timeout: float = 10.0,
        reconnect_interval: float = 5.0,
        reconnect_backoff: float = 1.0,
        max_reconnect_interval: float = 60.0,
        max_reconnect_attempts: int = 0,
        ping_interval: Optional[float] = 30,
        ping_timeout: Optional[float] = 10,
        close_timeout: float = 5,
        connect_factory: Optional[ConnectFactory] = None,
        redis_client: Optional[RedisClient] = None
    ):
        self.cache = PriceCache(store=snapshot_store, expiry_seconds=cache_expiry_seconds)
        self.authenticator = Authenticator(api_key=api_key, timeout=auth_timeout)
        self.registry = SubscriptionRegistry()
        self.connection = ConnectionManager(
            url=url,
            registry=self.registry,
            price_cache=self.cache,
            authenticator=self.authenticator,
            enabled=enabled,
            reconnect_interval=reconnect_interval,
            reconnect_backoff=reconnect_backoff,
            max_reconnect_interval=max_reconnect_interval,
            max_reconnect_attempts=max_reconnect_attempts,
            ping_interval=ping_interval,
            ping_timeout=ping_timeout,
            close_timeout=close_timeout,
            connect_factory=connect_factory,
        )
        # Only set when the client owns a Redis connection for its snapshot store
        self._redis_client = redis_client
        self._started = False

    # =============================================
    # LIFECYCLE
    # =============================================

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Load the persisted snapshot, then open the connection. No-op if started."""
        if self._started:
            return
        self._started = True

        if self._redis_client is not None and not self._redis_client.is_connected:
            try:
                await self._redis_client.connect()
            except Exception as e:
                logger.error("snapshot_redis_unavailable", error=str(e), error_type=type(e).__name__)

        await self.cache.load()
        await self.connection.connect()
        logger.info("streaming_client_started", url=self.connection.url, cached_symbols=len(self.cache))

    async def stop(self) -> None:
        """Disconnect and release every resource. Safe to call repeatedly."""
        try:
            await self.connection.disconnect()
        finally:
            await self.cache.flush()
            if self._redis_client is not None and self._redis_client.is_connected:
                await self._redis_client.disconnect()
            if self._started:
                logger.info("streaming_client_stopped")
            self._started = False

    async def __aenter__(self) -> "StreamingClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # =============================================
    # CONNECTION
    # =============================================

    async def connect(self) -> bool:
        return await self.connection.connect()

    async def disconnect(self) -> None:
        await self.connection.disconnect()

    async def reconnect(self) -> bool:
        return await self.connection.reconnect()

    def status(self) -> ConnectionStatus:
        return self.connection.status()

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def is_authenticated(self) -> bool:
        return self.connection.is_authenticated

    # =============================================
    # SUBSCRIPTIONS
    # =============================================

    async def subscribe(self, symbols: Iterable[str]) -> List[str]:
        """Declare interest in symbols. Returns the ones that were new."""
        return await self.registry.subscribe(symbols)

    async def unsubscribe(self, symbols: Iterable[str]) -> List[str]:
        """Drop interest in symbols. Returns the ones that were removed."""
        return await self.registry.unsubscribe(symbols)

    @property
    def subscribed_symbols(self) -> Set[str]:
        return self.registry.symbols

    # =============================================
    # PRICES
    # =============================================

    def get_price(self, symbol: str) -> Optional[float]:
        return self.cache.get_price(symbol.strip())

    def get_entry(self, symbol: str) -> Optional[PriceEntry]:
        return self.cache.get(symbol.strip())

    def get_prices(self, symbols: Iterable[str]) -> Dict[str, Optional[float]]:
        """Latest price (or None) for each requested symbol."""
        return {symbol: self.cache.get_price(symbol) for symbol in normalize_symbols(symbols)}

    @property
    def prices(self) -> Dict[str, float]:
        return self.cache.prices()

    # =============================================
    # OBSERVERS
    # =============================================

    def add_price_listener(self, listener: PriceListener) -> None:
        self.cache.add_listener(listener)

    def remove_price_listener(self, listener: PriceListener) -> None:
        self.cache.remove_listener(listener)

    def add_status_listener(self, listener: StatusListener) -> None:
        self.connection.add_status_listener(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        self.connection.remove_status_listener(listener)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.connection.get_stats(),
            "subscribed_symbols_count": len(self.registry),
            "subscription_messages": dict(self.registry.stats),
            "authentication": dict(self.authenticator.stats),
            "price_cache": dict(self.cache.stats),
            "cached_symbols_count": len(self.cache),
            "loaded_from_snapshot": self.cache.loaded_from_snapshot,
        }


def create_snapshot_store(settings: Settings):
    """
    Build the snapshot store selected by settings.price_cache_backend

    Returns:
        (store, redis_client) - redis_client is only set for the redis backend
    """
    backend = settings.price_cache_backend.lower()

    if backend == "redis":
        redis_client = RedisClient(settings.get_redis_url())
        return RedisSnapshotStore(redis_client, key=settings.price_cache_redis_key), redis_client

    if backend == "file":
        return JsonFileSnapshotStore(settings.price_cache_path), None

    if backend != "memory":
        logger.warning("unknown_snapshot_backend_using_memory", backend=backend)
    return InMemorySnapshotStore(), None


def create_streaming_client(
    settings: Settings,
    connect_factory: Optional[ConnectFactory] = None
) -> StreamingClient:
    """Create an unstarted StreamingClient from settings. Caller must await start()."""
    store, redis_client = create_snapshot_store(settings)

    return StreamingClient(
        url=settings.price_stream_url.strip(),
        api_key=(settings.price_stream_api_key or "").strip() or None,
        enabled=settings.price_stream_enabled,
        snapshot_store=store,
        cache_expiry_seconds=settings.price_cache_expiry_seconds,
        auth_timeout=settings.price_stream_auth_timeout,
        reconnect_interval=settings.price_stream_reconnect_interval,
        reconnect_backoff=settings.price_stream_reconnect_backoff,
        max_reconnect_interval=settings.price_stream_max_reconnect_interval,
        max_reconnect_attempts=settings.price_stream_max_reconnect_attempts,
        ping_interval=settings.ws_ping_interval,
        ping_timeout=settings.ws_ping_timeout,
        close_timeout=settings.ws_close_timeout,
        connect_factory=connect_factory,
        redis_client=redis_client,
    )
