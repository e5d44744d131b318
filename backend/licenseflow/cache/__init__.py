"""
Redis connection management.
"""

from .redis_client import RedisClient

__all__ = ["RedisClient"]
