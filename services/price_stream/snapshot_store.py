"""
Snapshot Stores

Durable key-value backends for the price cache snapshot.
Every backend stores a single record:

    {"data": {"AAPL": 190.5, ...}, "timestamp": <epoch ms>}
"""

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from shared.utils.logger import get_logger
from shared.utils.redis_client import RedisClient

logger = get_logger(__name__, component="snapshot_store")


class SnapshotStore(ABC):
    """
    Contract for snapshot persistence

    load() returns the raw stored record (or None when nothing is stored).
    save() replaces the stored record. Validation and expiry are the
    PriceCache's job, not the store's.
    """

    @abstractmethod
    async def load(self) -> Optional[Dict[str, Any]]:
        """Return the stored snapshot record, or None."""

    @abstractmethod
    async def save(self, snapshot: Dict[str, Any]) -> None:
        """Persist the snapshot record, replacing any previous one."""


class InMemorySnapshotStore(SnapshotStore):
    """Process-local store. Used in tests and when persistence is disabled."""

    def __init__(self, snapshot: Optional[Dict[str, Any]] = None):
        self.snapshot = snapshot
        self.saves = 0

    async def load(self) -> Optional[Dict[str, Any]]:
        return self.snapshot

    async def save(self, snapshot: Dict[str, Any]) -> None:
        self.snapshot = snapshot
        self.saves += 1


class JsonFileSnapshotStore(SnapshotStore):
    """
    Snapshot stored as a JSON file

    Writes go to a temp file in the same directory and are renamed over the
    target, so a crash mid-write never leaves a truncated snapshot behind.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    async def load(self) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read)

    async def save(self, snapshot: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, snapshot)

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        with self.path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, snapshot: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class RedisSnapshotStore(SnapshotStore):
    """Snapshot stored under a single Redis key"""

    def __init__(self, redis_client: RedisClient, key: str = "price_stream:price_cache"):
        self.redis = redis_client
        self.key = key

    async def load(self) -> Optional[Dict[str, Any]]:
        value = await self.redis.get(self.key)
        if value is not None and not isinstance(value, dict):
            raise ValueError(f"unexpected snapshot payload at {self.key}: {type(value).__name__}")
        return value

    async def save(self, snapshot: Dict[str, Any]) -> None:
        ok = await self.redis.set(self.key, snapshot)
        if not ok:
            logger.warning("price_snapshot_not_saved", key=self.key)
