"""
Caching Service.

Redis-backed cache for product display snapshots. Purely a read
optimisation: the purchase path always re-reads the product inside its
transaction, and any Redis failure degrades to a direct database read.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from redis.exceptions import RedisError

from backend.app.core.config import settings
from backend.app.core.redis_client import get_redis

logger = logging.getLogger(__name__)

PRODUCT_KEY_PREFIX = "cache:product:"


class CacheService:

    @staticmethod
    async def get(key: str) -> Optional[Any]:
        try:
            redis = await get_redis()
            raw = await redis.get(key)
        except (RedisError, OSError) as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        return json.loads(raw)

    @staticmethod
    async def set(key: str, data: Any, ttl_seconds: int = 300) -> bool:
        try:
            redis = await get_redis()
            await redis.set(key, json.dumps(data, default=str), ex=ttl_seconds)
            return True
        except (RedisError, OSError) as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)
            return False

    @staticmethod
    async def delete(key: str) -> None:
        try:
            redis = await get_redis()
            await redis.delete(key)
        except (RedisError, OSError) as exc:
            logger.warning("Cache invalidation failed for %s: %s", key, exc)

    @staticmethod
    async def clear() -> int:
        """Drop every cached product snapshot. Returns the number of keys removed."""
        redis = await get_redis()
        removed = 0
        async for key in redis.scan_iter(match=f"{PRODUCT_KEY_PREFIX}*"):
            removed += await redis.delete(key)
        return removed


def product_key(product_id: int) -> str:
    return f"{PRODUCT_KEY_PREFIX}{product_id}"


async def cached_product_snapshot(
    product_id: int, loader: Callable[[], Awaitable[Optional[Dict[str, Any]]]]
) -> Optional[Dict[str, Any]]:
    """Return the cached snapshot, loading and caching it on a miss."""
    key = product_key(product_id)
    snapshot = await CacheService.get(key)
    if snapshot is not None:
        return snapshot

    snapshot = await loader()
    if snapshot is not None:
        await CacheService.set(key, snapshot, ttl_seconds=settings.product_cache_ttl_seconds)
    return snapshot


async def invalidate_product(product_id: int) -> None:
    await CacheService.delete(product_key(product_id))
