import json
import logging
from typing import Any, Iterable, Optional

from redis.exceptions import RedisError

from shared.utils import CacheUnavailable

logger = logging.getLogger(__name__)

TAG_PREFIX = "tag"
_DELETE_CHUNK = 500


class CacheStore:
    """
    Thin JSON key-value wrapper over an async Redis client.

    - every key lives under an optional namespace prefix (`api:cart:...`)
    - values are JSON documents, written with a TTL when one is given
    - tags are Redis sets of full keys, used for exact fan-out invalidation
    - RedisError is re-raised as CacheUnavailable; callers decide whether to swallow it
    """

    def __init__(self, client, prefix: Optional[str] = None, default_ttl: int = 3600):
        self.redis = client
        self.prefix = prefix
        self.default_ttl = default_ttl
        self.hits = 0
        self.misses = 0

    def full_key(self, key: str, prefix: Optional[str] = None) -> str:
        prefix = self.prefix if prefix is None else prefix
        return f"{prefix}:{key}" if prefix else key

    def tag_key(self, tag: str) -> str:
        return self.full_key(f"{TAG_PREFIX}:{tag}")

    async def get(self, key: str, prefix: Optional[str] = None) -> Optional[Any]:
        full_key = self.full_key(key, prefix)
        try:
            raw = await self.redis.get(full_key)
        except RedisError as e:
            raise CacheUnavailable(f"Cache GET failed for {full_key}: {e}") from e

        if raw is None:
            self.misses += 1
            logger.debug("Cache miss", extra={"cache_key": full_key})
            return None

        self.hits += 1
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry", extra={"cache_key": full_key})
            return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        prefix: Optional[str] = None,
        tags: Iterable[str] = (),
    ) -> None:
        full_key = self.full_key(key, prefix)
        ttl = self.default_ttl if ttl is None else ttl
        payload = json.dumps(value, default=str)
        tags = list(tags)
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                if ttl > 0:
                    pipe.set(full_key, payload, ex=ttl)
                else:
                    pipe.set(full_key, payload)
                for tag in tags:
                    tag_key = self.tag_key(tag)
                    pipe.sadd(tag_key, full_key)
                    if ttl > 0:
                        # a tag must live as long as the longest-lived key it points at
                        pipe.expire(tag_key, ttl, nx=True)
                        pipe.expire(tag_key, ttl, gt=True)
                await pipe.execute()
        except RedisError as e:
            raise CacheUnavailable(f"Cache SET failed for {full_key}: {e}") from e

    async def delete(self, *keys: str, prefix: Optional[str] = None) -> int:
        if not keys:
            return 0
        full_keys = [self.full_key(k, prefix) for k in keys]
        try:
            return await self.redis.delete(*full_keys)
        except RedisError as e:
            raise CacheUnavailable(f"Cache DELETE failed: {e}") from e

    async def exists(self, key: str, prefix: Optional[str] = None) -> bool:
        try:
            return await self.redis.exists(self.full_key(key, prefix)) == 1
        except RedisError as e:
            raise CacheUnavailable(f"Cache EXISTS failed: {e}") from e

    async def keys(self, pattern: str = "*", prefix: Optional[str] = None) -> list:
        """Full keys matching a glob pattern inside the namespace (SCAN, never KEYS)."""
        match = self.full_key(pattern, prefix)
        try:
            return [k async for k in self.redis.scan_iter(match=match, count=_DELETE_CHUNK)]
        except RedisError as e:
            raise CacheUnavailable(f"Cache SCAN failed: {e}") from e

    async def delete_pattern(self, pattern: str, prefix: Optional[str] = None) -> int:
        matched = await self.keys(pattern, prefix)
        deleted = 0
        try:
            for start in range(0, len(matched), _DELETE_CHUNK):
                deleted += await self.redis.delete(*matched[start:start + _DELETE_CHUNK])
        except RedisError as e:
            raise CacheUnavailable(f"Cache DELETE PATTERN failed: {e}") from e
        logger.info(f"Deleted {deleted} cache keys matching {pattern}")
        return deleted

    async def invalidate_tag(self, tag: str) -> int:
        """Delete every key recorded under a tag, then the tag itself."""
        tag_key = self.tag_key(tag)
        try:
            members = await self.redis.smembers(tag_key)
            deleted = 0
            if members:
                deleted = await self.redis.delete(*members)
            await self.redis.delete(tag_key)
        except RedisError as e:
            raise CacheUnavailable(f"Cache tag invalidation failed for {tag_key}: {e}") from e
        return deleted

    async def stats(self) -> dict:
        all_keys = await self.keys("*")
        families: dict = {}
        offset = len(self.prefix) + 1 if self.prefix else 0
        for key in all_keys:
            family = key[offset:].split(":", 1)[0]
            families[family] = families.get(family, 0) + 1
        return {
            "total_keys": len(all_keys),
            "cart_keys": families.get("cart", 0),
            "product_keys": families.get("product", 0) + families.get("products", 0),
            "order_keys": families.get("order", 0) + families.get("orders", 0),
            "tag_keys": families.get(TAG_PREFIX, 0),
            "families": families,
            "hits": self.hits,
            "misses": self.misses,
        }

    async def clear_all(self) -> int:
        """Clear the namespace; only an unprefixed store flushes the whole database."""
        if self.prefix:
            return await self.delete_pattern("*")
        try:
            await self.redis.flushdb()
        except RedisError as e:
            raise CacheUnavailable(f"Cache FLUSHDB failed: {e}") from e
        return 0

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.redis.aclose()
