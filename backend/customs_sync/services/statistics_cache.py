"""Invalidation of cached per-company statistics in Redis."""

import logging
import uuid

import redis.asyncio as aioredis

logger = logging.getLogger("customs.statistics")


class StatisticsCache:
    def __init__(self, redis_url: str, prefix: str = "stats"):
        self.redis_url = redis_url
        self.prefix = prefix

    async def invalidate(self, company_id: uuid.UUID) -> int:
        """Drop every cached statistics key for the company; returns the count."""
        client = aioredis.from_url(self.redis_url)
        try:
            keys = [key async for key in client.scan_iter(match=f"{self.prefix}:{company_id}:*")]
            if keys:
                await client.delete(*keys)
            logger.info("Invalidated %d statistics keys for company %s", len(keys), company_id)
            return len(keys)
        finally:
            await client.aclose()
