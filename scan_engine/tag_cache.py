"""
Tag dictionary cache

Non-authoritative memoization of tag name -> (id, severity). Entries live
until their TTL lapses (never, by default) or until they are explicitly
invalidated, e.g. after an administrator changes a tag's severity.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import Settings, get_config
from .models import NsfwLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedTag:
    id: int
    name: str
    nsfw_level: int = 0

    @property
    def blocked(self) -> bool:
        return self.nsfw_level == NsfwLevel.BLOCKED


class TagCache(ABC):
    """Abstract base class for tag dictionary caches"""

    @abstractmethod
    async def get_many(self, names: Iterable[str]) -> Dict[str, CachedTag]:
        """Return cached entries for the names present in the cache"""
        pass

    @abstractmethod
    async def set_many(self, entries: Iterable[CachedTag]) -> None:
        pass

    @abstractmethod
    async def invalidate(self, names: Iterable[str]) -> int:
        """Drop names from the cache, returning how many were present"""
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass

    async def close(self) -> None:
        pass


class TtlTagCache(TagCache):
    """In-process cache with an optional time-to-live"""

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[CachedTag, Optional[float]]] = {}

    async def get_many(self, names: Iterable[str]) -> Dict[str, CachedTag]:
        now = self._clock()
        found = {}
        for name in names:
            item = self._entries.get(name)
            if item is None:
                continue
            entry, expires_at = item
            if expires_at is not None and expires_at <= now:
                del self._entries[name]
                continue
            found[name] = entry
        return found

    async def set_many(self, entries: Iterable[CachedTag]) -> None:
        expires_at = self._clock() + self.ttl_seconds if self.ttl_seconds else None
        for entry in entries:
            self._entries[entry.name] = (entry, expires_at)

    async def invalidate(self, names: Iterable[str]) -> int:
        removed = 0
        for name in names:
            if self._entries.pop(name, None) is not None:
                removed += 1
        return removed

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisTagCache(TagCache):
    """Cache shared between service replicas; failures degrade to cache misses"""

    def __init__(self, client: redis.Redis, ttl_seconds: Optional[int] = None, prefix: str = "tag-cache:"):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: Optional[int] = None) -> "RedisTagCache":
        return cls(redis.from_url(redis_url, decode_responses=True), ttl_seconds=ttl_seconds)

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    async def get_many(self, names: Iterable[str]) -> Dict[str, CachedTag]:
        names = list(names)
        if not names:
            return {}
        try:
            values = await self.client.mget([self._key(name) for name in names])
        except RedisError as e:
            logger.warning(f"Tag cache read failed, treating as miss: {e}")
            return {}

        found = {}
        for name, value in zip(names, values):
            if value is None:
                continue
            data = json.loads(value)
            found[name] = CachedTag(id=data["id"], name=name, nsfw_level=data.get("nsfw_level", 0))
        return found

    async def set_many(self, entries: Iterable[CachedTag]) -> None:
        try:
            pipe = self.client.pipeline()
            for entry in entries:
                value = json.dumps({"id": entry.id, "nsfw_level": entry.nsfw_level})
                pipe.set(self._key(entry.name), value, ex=self.ttl_seconds)
            await pipe.execute()
        except RedisError as e:
            logger.warning(f"Tag cache write failed: {e}")

    async def invalidate(self, names: Iterable[str]) -> int:
        keys = [self._key(name) for name in names]
        if not keys:
            return 0
        try:
            return await self.client.delete(*keys)
        except RedisError as e:
            logger.warning(f"Tag cache invalidation failed: {e}")
            return 0

    async def clear(self) -> None:
        try:
            keys = [key async for key in self.client.scan_iter(match=f"{self.prefix}*")]
            if keys:
                await self.client.delete(*keys)
        except RedisError as e:
            logger.warning(f"Tag cache clear failed: {e}")

    async def close(self) -> None:
        await self.client.aclose()


def create_tag_cache(settings: Optional[Settings] = None) -> TagCache:
    """Build the cache selected by ``tag_cache_backend``"""
    settings = settings or get_config()
    if settings.tag_cache_backend == "redis":
        logger.info("Using Redis tag cache")
        return RedisTagCache.from_url(settings.redis_url, ttl_seconds=settings.tag_cache_ttl_seconds)
    return TtlTagCache(ttl_seconds=settings.tag_cache_ttl_seconds)
