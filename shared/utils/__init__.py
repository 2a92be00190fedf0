"""
Utility modules
"""

from .logger import configure_logging, get_logger
from .redis_client import RedisClient

__all__ = [
    "configure_logging",
    "get_logger",
    "RedisClient",
]
