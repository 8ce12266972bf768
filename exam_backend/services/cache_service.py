"""
exam_backend/services/cache_service.py
Pass-through response cache on Redis

Values are stored as JSON under a fixed key prefix and expire through the
store's own TTL. The cache is never load-bearing: any store failure is
logged and reported as a miss (get) or False (set/delete) so callers fall
through to a live computation.
"""
import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from exam_backend import config

logger = logging.getLogger(__name__)

_CACHE_ERRORS = (RedisError, OSError, TypeError, ValueError)


def questions_key(subject_id: str, subcategory_id: str) -> str:
    return f"questions:{subject_id}:{subcategory_id}"


def performance_key(student_id: int, question_id: int) -> str:
    return f"performance:{student_id}:{question_id}"


class CacheService:
    def __init__(
        self,
        client: Optional[aioredis.Redis] = None,
        prefix: str = config.CACHE_PREFIX,
        default_ttl: int = config.CACHE_TTL_SECONDS,
    ):
        self.prefix = prefix
        self.default_ttl = default_ttl
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.Redis(
                host=config.REDIS_HOST,
                port=config.REDIS_PORT,
                password=config.REDIS_PASSWORD,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self.client.get(self._key(key))
            return json.loads(value) if value is not None else None
        except _CACHE_ERRORS as e:
            logger.warning(f"Cache get error for {key}: {type(e).__name__}: {str(e)}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            await self.client.set(self._key(key), json.dumps(value, default=str), ex=ttl or self.default_ttl)
            return True
        except _CACHE_ERRORS as e:
            logger.warning(f"Cache set error for {key}: {type(e).__name__}: {str(e)}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self.client.delete(self._key(key))
            return True
        except _CACHE_ERRORS as e:
            logger.warning(f"Cache delete error for {key}: {type(e).__name__}: {str(e)}")
            return False

    async def flush(self) -> int:
        """Delete every key under the prefix. Returns the number removed, -1 on error."""
        removed = 0
        try:
            async for key in self.client.scan_iter(match=f"{self.prefix}*"):
                removed += await self.client.delete(key)
        except _CACHE_ERRORS as e:
            logger.warning(f"Cache flush error: {type(e).__name__}: {str(e)}")
            return -1
        logger.info(f"Cache flushed: {removed} keys removed")
        return removed

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except _CACHE_ERRORS as e:
                logger.warning(f"Cache close error: {str(e)}")
