# apishield/services/redis_service.py
"""
Redis Service.

Async-only wrapper around Redis used as the shared store for rate-limit
windows when several worker processes serve the same API:
- Configuration from settings or environment
- Connection check on startup
- Health checks
"""
import os
from dataclasses import dataclass
from typing import Optional, Dict, Any
import logging

import redis.asyncio as redis

from apishield.core.service_base import BaseService, ServiceConfig
from apishield.core.exceptions import RedisServiceError

logger = logging.getLogger(__name__)


@dataclass
class RedisConfig(ServiceConfig):
    """Configuration for Redis Service"""
    url: Optional[str] = None
    decode_responses: bool = True
    socket_timeout: float = 5.0
    max_connections: int = 10
    retry_on_timeout: bool = True
    health_check_interval: int = 30


class RedisService(BaseService[RedisConfig]):
    """
    Async Redis service.

    Unlike a cache, the rate limiter cannot work without its store, so a
    failed connection is an initialization error here.
    """

    URL_ENV_VARS = ("REDIS_URL", "REDIS_DIRECT_URI")

    def __init__(self, config: Optional[RedisConfig] = None):
        """
        Initialize Redis Service.

        Args:
            config: Redis configuration. If not provided, uses environment variables.
        """
        self._url_source = None  # Track which env var was used
        if config is None:
            config = RedisConfig(url=self._get_redis_url())
        elif config.url:
            self._url_source = "config"

        super().__init__(config, logger)

    def _get_redis_url(self) -> Optional[str]:
        for var in self.URL_ENV_VARS:
            if url := os.environ.get(var):
                self._url_source = var
                logger.info(f"Using Redis URL from {var}")
                return url
        return None

    def _validate_config(self) -> None:
        super()._validate_config()

        if not self.config.url:
            raise RedisServiceError(
                "No Redis URL configured. Set REDIS_URL to use the redis rate limit backend.",
                operation="configure"
            )

    async def _initialize_client(self) -> redis.Redis:
        """Create the client and check the connection"""
        client = redis.from_url(
            self.config.url,
            decode_responses=self.config.decode_responses,
            socket_timeout=self.config.socket_timeout,
            max_connections=self.config.max_connections,
            retry_on_timeout=self.config.retry_on_timeout,
            health_check_interval=self.config.health_check_interval
        )

        await client.ping()
        self.logger.info("Redis connection successful")
        return client

    async def health_check(self) -> Dict[str, Any]:
        """
        Check Redis service health.

        Returns:
            Health status including connection info
        """
        if not self._client:
            return {
                "healthy": False,
                "status": "not_connected",
                "details": {
                    "url_source": self._url_source,
                    "error": "Client not initialized"
                }
            }

        try:
            await self._client.ping()
            info = await self._client.info()

            return {
                "healthy": True,
                "status": "connected",
                "details": {
                    "url_source": self._url_source,
                    "redis_version": info.get("redis_version", "unknown"),
                    "connected_clients": info.get("connected_clients", 0)
                }
            }

        except Exception as e:
            return {
                "healthy": False,
                "status": "error",
                "details": {
                    "url_source": self._url_source,
                    "error": str(e)
                }
            }

    async def _cleanup(self) -> None:
        """Close the Redis connection"""
        if self._client:
            await self._client.aclose()

    def is_connected(self) -> bool:
        """Check if Redis is connected and available"""
        return self._client is not None
