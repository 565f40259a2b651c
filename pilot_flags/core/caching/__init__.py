"""Caching Module.

Provides key/value cache backends with TTL and prefix deletion:
- In-memory cache (tests, single-process deployments)
- Redis cache (shared between service replicas)

Backends hold no business logic and are allowed to raise; callers that
need best-effort semantics wrap them (see FlagCache).
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class CacheEntry:
    """A cache entry with metadata."""

    key: str
    value: Any
    created_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None

    @property
    def is_expired(self) -> bool:
        """Check if entry is expired."""
        if self.expires_at is None:
            return False
        return time.time() >= self.expires_at


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "hit_rate": self.hit_rate,
            "size": self.size,
        }


class CacheBackend(ABC):
    """Abstract cache backend."""

    name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value by key."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Set value with optional TTL (seconds)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key."""
        pass

    @abstractmethod
    async def delete_by_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix; returns count removed."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Clear all entries."""
        pass


class InMemoryCache(CacheBackend):
    """In-memory cache implementation.

    Values are stored as given; the flag layer only stores JSON-safe dicts
    and lists so behavior matches the Redis backend.
    """

    name = "memory"

    def __init__(self, default_ttl: Optional[float] = None):
        self._default_ttl = default_ttl
        self._cache: Dict[str, CacheEntry] = {}
        self._stats = CacheStats()

    async def get(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)

        if entry is None:
            self._stats.misses += 1
            return None

        if entry.is_expired:
            self._cache.pop(key, None)
            self._stats.misses += 1
            self._stats.expirations += 1
            self._stats.size = len(self._cache)
            return None

        self._stats.hits += 1
        return entry.value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        effective_ttl = ttl if ttl is not None else self._default_ttl
        expires_at = time.time() + effective_ttl if effective_ttl is not None else None
        self._cache[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
        self._stats.size = len(self._cache)
        return True

    async def delete(self, key: str) -> bool:
        removed = self._cache.pop(key, None) is not None
        self._stats.size = len(self._cache)
        return removed

    async def delete_by_prefix(self, prefix: str) -> int:
        keys = [k for k in list(self._cache.keys()) if k.startswith(prefix)]
        for key in keys:
            self._cache.pop(key, None)
        self._stats.size = len(self._cache)
        return len(keys)

    async def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        entry = self._cache.get(key)
        if entry is None:
            return False
        if entry.is_expired:
            self._cache.pop(key, None)
            self._stats.expirations += 1
            self._stats.size = len(self._cache)
            return False
        return True

    async def clear(self) -> None:
        self._cache.clear()
        self._stats.size = 0

    def keys(self) -> List[str]:
        return list(self._cache.keys())

    def get_stats(self) -> CacheStats:
        return self._stats


class RedisCache(CacheBackend):
    """Redis-backed cache storing JSON strings.

    Expects a ``redis.asyncio.Redis`` client created with
    ``decode_responses=True``.
    """

    name = "redis"

    def __init__(self, client: Any, scan_count: int = 200, delete_batch: int = 500):
        self._client = client
        self._scan_count = scan_count
        self._delete_batch = delete_batch

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        payload = json.dumps(value, ensure_ascii=False)
        if ttl is not None:
            await self._client.setex(key, max(1, int(ttl)), payload)
        else:
            await self._client.set(key, payload)
        return True

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(key))

    async def delete_by_prefix(self, prefix: str) -> int:
        removed = 0
        batch: List[str] = []
        async for key in self._client.scan_iter(match=f"{prefix}*", count=self._scan_count):
            batch.append(key)
            if len(batch) >= self._delete_batch:
                removed += await self._client.delete(*batch)
                batch = []
        if batch:
            removed += await self._client.delete(*batch)
        return removed

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(key))

    async def clear(self) -> None:
        await self._client.flushdb()


__all__ = [
    "CacheEntry",
    "CacheStats",
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
]
