"""
Redis client wrapper with async support
Durable key-value storage for the price stream snapshot
"""

import json
from typing import Optional, Any
import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..config.settings import settings
from .logger import get_logger

logger = get_logger(__name__, component="redis")


class RedisClient:
    """
    Async Redis client storing JSON documents under plain keys

    Redis failures are logged here and reported through return values,
    so callers on the streaming path never see a RedisError.
    """

    def __init__(self, redis_url: Optional[str] = None):
        """
        Initialize Redis client

        Args:
            redis_url: Redis connection URL (uses settings if not provided)
        """
        self.redis_url = redis_url or settings.get_redis_url()
        self._client: Optional[Redis] = None

    async def connect(self) -> None:
        """Establish Redis connection"""
        try:
            self._client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await self._client.ping()
            logger.info("redis_connected", url=self.redis_url)
        except RedisError as e:
            logger.error("redis_connect_failed", error=str(e))
            raise

    async def disconnect(self) -> None:
        """Close Redis connection"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        """Get Redis client instance"""
        if not self._client:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def set(self, key: str, value: Any) -> bool:
        """
        Store a value as JSON

        Returns:
            True if successful
        """
        try:
            return bool(await self.client.set(key, json.dumps(value)))
        except RedisError as e:
            logger.error("redis_set_error", key=key, error=str(e))
            return False

    async def get(self, key: str) -> Optional[Any]:
        """
        Read a JSON value

        Returns:
            Decoded value, the raw string when it is not JSON, or None if not found
        """
        try:
            value = await self.client.get(key)
        except RedisError as e:
            logger.error("redis_get_error", key=key, error=str(e))
            return None

        if not value:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
