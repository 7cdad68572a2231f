"""
Optional Redis connection.

Built by the application lifespan when REDIS_URL is set. Every consumer must
handle `client is None`: Redis only backs best-effort features (the global
rate limiter), so an unreachable server degrades them instead of failing
requests.
"""
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from reeru.utils.logger import get_logger

logger = get_logger("redis")


class RedisHandle:
    def __init__(self, url: str):
        self.url = url
        self.client: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        """Connect if a URL is configured. Safe to call always."""
        if not self.url:
            logger.info("redis.disabled")
            return

        client = aioredis.from_url(
            self.url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        try:
            await client.ping()
        except (RedisError, OSError) as exc:
            logger.warning("redis.connect_failed", extra={"error": str(exc)[:200]})
            await client.aclose()
            return

        self.client = client
        logger.info("redis.connected")

    async def close(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("redis.close_failed", extra={"error": str(exc)[:200]})
        self.client = None

    async def is_healthy(self) -> bool:
        """Quick health probe, returns False rather than raising."""
        if self.client is None:
            return False
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError):
            return False
