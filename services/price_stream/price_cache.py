"""
Price Cache

Latest known price per symbol, fed by inbound price messages and mirrored
to a SnapshotStore so prices survive restarts.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional

from shared.models.stream import PriceEntry
from shared.utils.logger import get_logger

from .snapshot_store import SnapshotStore

logger = get_logger(__name__, component="price_cache")

PriceListener = Callable[[PriceEntry], None]

DEFAULT_EXPIRY_SECONDS = 24 * 60 * 60


class PriceCache:
    """
    In-memory symbol -> PriceEntry map with snapshot persistence

    Writer: ConnectionManager (inbound price_update messages).
    Readers: any consumer of the StreamingClient.

    Snapshot expiry is coarse-grained: a snapshot older than the expiry
    window is discarded as a whole at load time, never per symbol.

    Saves run in a single background writer task. Updates arriving while a
    save is in flight are coalesced into the next save, so the read loop
    never waits on storage. The writer reads the stored snapshot before its
    first save, so symbols persisted by a previous run are never dropped.
    """

    def __init__(
        self,
        store: Optional[SnapshotStore] = None,
        expiry_seconds: float = DEFAULT_EXPIRY_SECONDS
    ):
        self._store = store
        self._expiry_seconds = expiry_seconds
        self._entries: Dict[str, PriceEntry] = {}
        self._listeners: List[PriceListener] = []
        self._version = 0
        self.loaded_from_snapshot = False

        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._dirty = False
        self._writer: Optional[asyncio.Task] = None

        self.stats = {
            "updates": 0,
            "snapshot_saves": 0,
            "snapshot_save_errors": 0,
        }

    # --- Persistence ---

    async def load(self) -> int:
        """
        Adopt the persisted snapshot if it is still within the expiry window

        Returns:
            Number of symbols adopted (0 when missing, expired or unreadable)
        """
        async with self._load_lock:
            try:
                return await self._load_snapshot()
            finally:
                self._loaded = True

    async def _load_snapshot(self) -> int:
        if self._store is None:
            return 0

        try:
            snapshot = await self._store.load()
        except Exception as e:
            logger.error("price_snapshot_load_failed", error=str(e), error_type=type(e).__name__)
            return 0

        if not snapshot:
            logger.info("price_snapshot_missing")
            return 0

        try:
            data = snapshot["data"]
            saved_at_ms = float(snapshot["timestamp"])
            if not isinstance(data, dict):
                raise TypeError("snapshot data is not a mapping")
            prices = {str(symbol): float(price) for symbol, price in data.items()}
        except (KeyError, TypeError, ValueError) as e:
            logger.error("price_snapshot_invalid", error=str(e), error_type=type(e).__name__)
            return 0

        age_seconds = time.time() - saved_at_ms / 1000.0
        if age_seconds >= self._expiry_seconds:
            logger.info(
                "price_snapshot_expired",
                age_seconds=round(age_seconds, 1),
                expiry_seconds=self._expiry_seconds
            )
            return 0

        saved_at = saved_at_ms / 1000.0
        for symbol, price in prices.items():
            # Never clobber something observed live before load() ran
            if symbol not in self._entries:
                self._entries[symbol] = PriceEntry(symbol=symbol, price=price, observed_at=saved_at, live=False)
        self._version += 1
        self.loaded_from_snapshot = True

        logger.info("price_snapshot_loaded", symbols=len(prices), age_seconds=round(age_seconds, 1))
        return len(prices)

    def snapshot(self) -> Dict[str, object]:
        """Current state in the persisted snapshot format"""
        return {
            "data": {symbol: entry.price for symbol, entry in self._entries.items()},
            "timestamp": int(time.time() * 1000),
        }

    def _schedule_save(self) -> None:
        if self._store is None:
            return
        self._dirty = True
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._write_snapshots(), name="price-snapshot-writer")

    async def _write_snapshots(self) -> None:
        if not self._loaded:
            await self.load()

        while self._dirty:
            self._dirty = False
            try:
                await self._store.save(self.snapshot())
                self.stats["snapshot_saves"] += 1
            except Exception as e:
                self.stats["snapshot_save_errors"] += 1
                logger.error("price_snapshot_save_failed", error=str(e), error_type=type(e).__name__)

    async def flush(self) -> None:
        """Wait until every update recorded so far has been written."""
        while self._writer is not None and not self._writer.done():
            await asyncio.shield(self._writer)

    # --- Writes ---

    async def update(self, symbol: str, price: float, observed_at: Optional[float] = None) -> PriceEntry:
        """Record a live price, notify listeners, then queue a snapshot save."""
        entry = PriceEntry(
            symbol=symbol,
            price=price,
            observed_at=observed_at if observed_at is not None else time.time(),
            live=True,
        )
        self._entries[symbol] = entry
        self._version += 1
        self.stats["updates"] += 1

        self._notify(entry)
        self._schedule_save()
        return entry

    def _notify(self, entry: PriceEntry) -> None:
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("price_listener_failed", symbol=entry.symbol)

    def add_listener(self, listener: PriceListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: PriceListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # --- Reads ---

    def get(self, symbol: str) -> Optional[PriceEntry]:
        """Latest entry for a symbol, or None if unknown."""
        return self._entries.get(symbol)

    def get_price(self, symbol: str) -> Optional[float]:
        entry = self._entries.get(symbol)
        return entry.price if entry else None

    def get_all(self) -> Dict[str, PriceEntry]:
        """Shallow copy of every entry."""
        return dict(self._entries)

    def prices(self) -> Dict[str, float]:
        """symbol -> price map (live values win over snapshot values)."""
        return {symbol: entry.price for symbol, entry in self._entries.items()}

    def is_live(self, symbol: str) -> bool:
        entry = self._entries.get(symbol)
        return bool(entry and entry.live)

    @property
    def version(self) -> int:
        """Bumped on every change. Useful for change detection."""
        return self._version

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._entries
