"""
Tag-aware response cache for the Users service.

Entries are pre-serialized payloads stored under a key, an expiry and a set of
tags. Invalidating a tag removes every entry carrying it, whatever its key.
"""

import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, TYPE_CHECKING

import redis.asyncio as redis

from shared.errors import AccessLayerException, ServiceError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig
    from shared.metrics import MetricsCollector


Producer = Callable[[], Awaitable[str]]


class MemoryTagStore:
    """In-process tag store, suitable for a single worker or for tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._items: Dict[str, Tuple[str, float, Set[str]]] = {}
        self._tags: Dict[str, Set[str]] = {}

    async def start(self):
        return None

    async def stop(self):
        await self.clear()

    async def fetch(self, key: str) -> Optional[str]:
        entry = self._items.get(key)
        if entry is None:
            return None

        value, expires_at, _tags = entry
        if expires_at <= self._clock():
            self._drop(key)
            return None
        return value

    async def store(self, key: str, value: str, tags: Iterable[str], ttl: int) -> None:
        self._drop(key)
        tag_set = set(tags)
        self._items[key] = (value, self._clock() + ttl, tag_set)
        for tag in tag_set:
            self._tags.setdefault(tag, set()).add(key)

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        for tag in tags:
            for key in self._tags.pop(tag, set()):
                if key in self._items:
                    self._drop(key)
                    removed += 1
        return removed

    async def delete(self, key: str) -> bool:
        return self._drop(key)

    async def clear(self) -> None:
        self._items.clear()
        self._tags.clear()

    async def ping(self) -> bool:
        return True

    async def count(self) -> int:
        now = self._clock()
        return sum(1 for _value, expires_at, _tags in self._items.values() if expires_at > now)

    def _drop(self, key: str) -> bool:
        entry = self._items.pop(key, None)
        if entry is None:
            return False
        for tag in entry[2]:
            members = self._tags.get(tag)
            if members is not None:
                members.discard(key)
                if not members:
                    del self._tags[tag]
        return True


class RedisTagStore:
    """Redis-backed tag store.

    Values live under ``<prefix>:item:<key>`` with a native expiry; each tag is
    a Redis set ``<prefix>:tag:<tag>`` listing the keys that carry it.
    """

    def __init__(self, redis_url: str, prefix: str = "users_api", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.prefix = prefix
        self.logger = get_logger("users.cache.redis")
        self.redis: Optional[redis.Redis] = client

    async def start(self):
        """Start the Redis connection."""
        if self.redis is not None:
            return

        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.logger.info("Redis tag store started")

        except Exception as e:
            self.logger.error("Failed to start Redis tag store", error=str(e))
            raise AccessLayerException("REDIS_START_FAILED", str(e))

    async def stop(self):
        """Stop the Redis connection."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis tag store stopped")

    async def fetch(self, key: str) -> Optional[str]:
        value = await self.redis.get(self._item_key(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def store(self, key: str, value: str, tags: Iterable[str], ttl: int) -> None:
        await self.redis.setex(self._item_key(key), ttl, value)
        for tag in tags:
            tag_key = self._tag_key(tag)
            await self.redis.sadd(tag_key, key)
            # The tag set lives as long as its newest member
            await self.redis.expire(tag_key, ttl)

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        tag_keys = [self._tag_key(tag) for tag in tags]
        if not tag_keys:
            return 0

        # Read and drop each tag set in one MULTI/EXEC so no concurrent SADD is lost
        async with self.redis.pipeline(transaction=True) as pipeline:
            for tag_key in tag_keys:
                pipeline.smembers(tag_key)
                pipeline.delete(tag_key)
            results = await pipeline.execute()

        keys = {
            self._item_key(self._decode(member))
            for members in results[0::2]
            for member in (members or ())
        }
        if not keys:
            return 0
        return await self.redis.delete(*keys)

    async def delete(self, key: str) -> bool:
        removed = await self.redis.delete(self._item_key(key))
        for tag_key in await self.redis.keys(f"{self.prefix}:tag:*"):
            await self.redis.srem(tag_key, key)
        return bool(removed)

    async def clear(self) -> None:
        keys = await self.redis.keys(f"{self.prefix}:*")
        if keys:
            await self.redis.delete(*keys)

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except Exception:
            return False

    async def count(self) -> int:
        keys = await self.redis.keys(f"{self.prefix}:item:*")
        return len(keys)

    def _item_key(self, key: str) -> str:
        return f"{self.prefix}:item:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.prefix}:tag:{tag}"

    @staticmethod
    def _decode(member: Any) -> str:
        return member.decode("utf-8") if isinstance(member, bytes) else str(member)


class TagAwareCache:
    """Read-through cache with tag invalidation.

    ``get`` does not serialize producers: two concurrent misses on the same
    key may both run the producer, and the later write wins.
    """

    def __init__(
        self,
        store: Any,
        *,
        metrics: Optional["MetricsCollector"] = None,
        cache_type: str = "users",
    ):
        self.store = store
        self.metrics = metrics
        self.cache_type = cache_type
        self.logger = get_logger("users.cache")
        self.hits = 0
        self.misses = 0

    async def start(self):
        await self.store.start()

    async def stop(self):
        await self.store.stop()

    async def get(self, key: str, producer: Producer, *, tags: Iterable[str] = (), ttl: int) -> str:
        """Return the cached value for ``key`` or compute, tag and store it."""
        cached = await self._safe_fetch(key)
        if cached is not None:
            self.hits += 1
            self._count("cache_hits_total")
            self.logger.debug("Users cache hit", cache_key=key)
            return cached

        self.misses += 1
        self._count("cache_misses_total")
        self.logger.info("Users cache miss", cache_key=key)

        value = await producer()

        try:
            await self.store.store(key, value, list(tags), ttl)
        except Exception as e:
            self.logger.error("Cache store error", cache_key=key, error=str(e))
        return value

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Remove every entry tagged with any of ``tags``."""
        tag_list: List[str] = list(tags)
        try:
            removed = await self.store.invalidate_tags(tag_list)
        except Exception as e:
            self.logger.error("Cache invalidation error", tags=tag_list, error=str(e))
            raise ServiceError("Cache invalidation failed", details={"tags": tag_list}) from e

        for tag in tag_list:
            if self.metrics:
                self.metrics.increment_counter("cache_invalidations_total", tag=tag)
        self.logger.info("Invalidated cache tags", tags=tag_list, removed=removed)
        return removed

    async def delete(self, key: str) -> bool:
        return await self.store.delete(key)

    async def clear(self) -> None:
        await self.store.clear()
        self.logger.info("Cache cleared")

    async def health_check(self) -> bool:
        try:
            return await self.store.ping()
        except Exception:
            return False

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total = self.hits + self.misses
        try:
            entries = await self.store.count()
        except Exception as e:
            self.logger.error("Error getting cache stats", error=str(e))
            entries = None

        return {
            "backend": type(self.store).__name__,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
            "entries": entries,
        }

    async def _safe_fetch(self, key: str) -> Optional[str]:
        """Fetch a cached value, treating backend errors as a miss."""
        try:
            return await self.store.fetch(key)
        except Exception as e:
            self.logger.error("Cache fetch error", cache_key=key, error=str(e))
            return None

    def _count(self, metric_name: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, cache_type=self.cache_type)


def create_tag_cache(config: "BaseConfig", metrics: Optional["MetricsCollector"] = None) -> TagAwareCache:
    """Build the cache configured by ``cache_backend``."""
    backend = config.cache_backend.lower()
    if backend == "redis":
        store: Any = RedisTagStore(config.redis_url)
    elif backend == "memory":
        store = MemoryTagStore()
    else:
        raise ValueError(f"Unknown cache backend: {config.cache_backend}")
    return TagAwareCache(store, metrics=metrics)
