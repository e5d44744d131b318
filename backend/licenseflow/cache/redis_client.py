"""
Redis client configuration and connection management.
"""

import asyncio
from typing import Optional, Any, Dict

import redis.asyncio as redis
from redis.asyncio import Redis
import structlog

from licenseflow.core.config import Settings


logger = structlog.get_logger(__name__)


class RedisClient:
    """Async Redis client wrapper with connection management."""

    def __init__(self, settings: Settings, url: Optional[str] = None, max_connections: int = 20):
        self.url = url or settings.redis_url
        self.max_connections = max_connections
        self._client: Optional[Redis] = None
        self._pool: Optional[redis.ConnectionPool] = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        try:
            if self._client is None:
                self._pool = redis.ConnectionPool.from_url(
                    self.url,
                    decode_responses=True,
                    max_connections=self.max_connections,
                    retry_on_timeout=True,
                    socket_keepalive=True,
                )
                self._client = Redis(connection_pool=self._pool)

                # Test connection
                await self._client.ping()
                logger.info("Redis connection established", url=self.url)

        except Exception as e:
            logger.error("Failed to connect to Redis", url=self.url, error=str(e))
            raise

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")

    @property
    def client(self) -> Redis:
        """Get Redis client instance."""
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def health_check(self) -> Dict[str, Any]:
        """Check Redis connection health."""
        try:
            if self._client is None:
                return {"status": "disconnected", "error": "No connection"}

            loop = asyncio.get_running_loop()
            start_time = loop.time()
            result = await self._client.ping()
            ping_time = (loop.time() - start_time) * 1000

            return {
                "status": "healthy" if result else "unhealthy",
                "ping_ms": round(ping_time, 2),
            }
        except Exception as e:
            return {"status": "error", "error": str(e)}
