"""
Centralized configuration using Pydantic Settings
Loads from environment variables and .env file
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """
    Application settings
    All settings can be overridden by environment variables
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow"
    )

    # =============================================
    # PRICE STREAM CONNECTION
    # =============================================
    price_stream_url: str = Field(default="", description="Price stream WebSocket URL")
    price_stream_api_key: Optional[str] = Field(default=None, description="Price stream API key (optional)")
    price_stream_enabled: bool = Field(default=True, description="Enable the price stream connection")

    # =============================================
    # RECONNECTION / AUTHENTICATION
    # =============================================
    price_stream_reconnect_interval: float = Field(default=5.0, description="Seconds before a reconnect attempt")
    price_stream_reconnect_backoff: float = Field(
        default=1.0,
        description="Backoff multiplier per attempt (1.0 = fixed interval)"
    )
    price_stream_max_reconnect_interval: float = Field(default=60.0, description="Cap for the reconnect delay")
    price_stream_max_reconnect_attempts: int = Field(default=0, description="Max reconnect attempts (0 = unlimited)")
    price_stream_auth_timeout: float = Field(default=10.0, description="Authentication handshake timeout in seconds")

    # =============================================
    # PRICE CACHE
    # =============================================
    price_cache_expiry_hours: float = Field(default=24.0, description="Persisted price snapshot expiry (24h)")
    price_cache_backend: str = Field(default="file", description="Snapshot backend (memory, file or redis)")
    price_cache_path: str = Field(default=".price_cache.json", description="Snapshot file for the file backend")
    price_cache_redis_key: str = Field(default="price_stream:price_cache", description="Snapshot key for the redis backend")

    # =============================================
    # REDIS
    # =============================================
    redis_host: str = Field(default="redis", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_db: int = Field(default=0, description="Redis database number")
    redis_password: Optional[str] = Field(default=None, description="Redis password")

    # =============================================
    # WEBSOCKET
    # =============================================
    ws_ping_interval: int = Field(default=30, description="WebSocket ping interval")
    ws_ping_timeout: int = Field(default=10, description="WebSocket ping timeout")
    ws_close_timeout: int = Field(default=5, description="WebSocket close handshake timeout")

    # =============================================
    # HTTP SERVICE
    # =============================================
    price_stream_host: str = Field(default="0.0.0.0", description="Price stream HTTP host")
    price_stream_port: int = Field(default=8010, description="Price stream HTTP port")

    # =============================================
    # LOGGING
    # =============================================
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format (json or text)")

    # =============================================
    # HELPER METHODS
    # =============================================

    @property
    def price_cache_expiry_seconds(self) -> float:
        """Snapshot expiry window in seconds"""
        return self.price_cache_expiry_hours * 3600

    def get_redis_url(self) -> str:
        """Get Redis connection URL"""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


# Global settings instance
settings = Settings()
