import json
import logging
from typing import Any, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from app.core.errors import CacheError

logger = logging.getLogger(__name__)


class RedisStore:
    """
    JSON key-value store with TTL on top of Redis.

    Concurrent writers to one key are last-write-wins; there is no locking.
    """

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except RedisError as error:
            logger.error(f"Redis GET failed for {key}: {error}")
            raise CacheError(f"Cache read failed for {key}") from error

        if raw is None:
            return None

        try:
            return json.loads(raw)
        except (TypeError, ValueError) as error:
            # A corrupt entry behaves like a miss
            logger.error(f"Error parsing cached JSON for {key}: {error}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        payload = json.dumps(value, default=str)
        try:
            if ttl:
                await self.client.set(key, payload, ex=ttl)
            else:
                await self.client.set(key, payload)
        except RedisError as error:
            logger.error(f"Redis SET failed for {key}: {error}")
            raise CacheError(f"Cache write failed for {key}") from error

    async def delete(self, key: str) -> int:
        try:
            return await self.client.delete(key)
        except RedisError as error:
            logger.error(f"Redis DEL failed for {key}: {error}")
            raise CacheError(f"Cache delete failed for {key}") from error

    async def flush(self) -> None:
        try:
            await self.client.flushdb()
        except RedisError as error:
            raise CacheError("Cache flush failed") from error

    async def close(self) -> None:
        await self.client.aclose()
