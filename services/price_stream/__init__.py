"""
Price Stream Client

Long-lived, authenticated, auto-reconnecting WebSocket client:
- Challenge-response authentication
- Deduplicated symbol subscriptions that survive reconnects
- Live price map persisted across restarts
"""

from .authenticator import Authenticator
from .client import StreamingClient, create_snapshot_store, create_streaming_client
from .connection_manager import ConnectionManager
from .price_cache import PriceCache
from .snapshot_store import (
    InMemorySnapshotStore,
    JsonFileSnapshotStore,
    RedisSnapshotStore,
    SnapshotStore,
)
from .subscription_registry import SubscriptionRegistry, normalize_symbols

__all__ = [
    "Authenticator",
    "ConnectionManager",
    "PriceCache",
    "SubscriptionRegistry",
    "StreamingClient",
    "SnapshotStore",
    "InMemorySnapshotStore",
    "JsonFileSnapshotStore",
    "RedisSnapshotStore",
    "create_snapshot_store",
    "create_streaming_client",
    "normalize_symbols",
]
