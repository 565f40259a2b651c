"""Best-effort snapshot cache in front of the flag store.

Every backend fault is swallowed here: a failed read is a miss, a failed
write or delete is dropped. Cache availability only affects latency, never
the answer a caller gets.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from pilot_flags.core.caching import CacheBackend
from pilot_flags.core.errors import ErrorCode
from pilot_flags.core.feature_flags.models import FlagSnapshot
from pilot_flags.utils.metrics import (
    flag_cache_errors_total,
    flag_cache_hits_total,
    flag_cache_miss_total,
)

logger = logging.getLogger(__name__)

FLAG_KEY_PREFIX = "flag:"
ALL_FLAGS_KEY = "all_flags"
DEFAULT_TTL_SECONDS = 1800


def name_key(name: str) -> str:
    return f"{FLAG_KEY_PREFIX}name:{name}"


def id_key(flag_id: int) -> str:
    return f"{FLAG_KEY_PREFIX}id:{flag_id}"


class FlagCache:
    """Cache-aside helper keyed by flag identity."""

    def __init__(self, backend: CacheBackend, ttl_seconds: float = DEFAULT_TTL_SECONDS):
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    def _log_failure(self, operation: str, key: str, error: Exception) -> None:
        flag_cache_errors_total.labels(operation=operation).inc()
        logger.warning(
            f"Cache {operation} failed for {key}: {error}",
            extra={
                "operation": operation,
                "cache_key": key,
                "backend": self.backend.name,
                "reason": ErrorCode.CACHE_UNAVAILABLE.value,
            },
        )

    async def get(self, key: str) -> Optional[object]:
        """Cached value or None; never raises."""
        try:
            return await self.backend.get(key)
        except Exception as e:
            self._log_failure("get", key, e)
            return None

    async def set(self, key: str, value: object, ttl: Optional[float] = None) -> None:
        try:
            await self.backend.set(key, value, ttl if ttl is not None else self.ttl_seconds)
        except Exception as e:
            self._log_failure("set", key, e)

    async def invalidate(self, key: str) -> None:
        try:
            await self.backend.delete(key)
        except Exception as e:
            self._log_failure("delete", key, e)

    async def invalidate_by_prefix(self, prefix: str) -> None:
        try:
            await self.backend.delete_by_prefix(prefix)
        except Exception as e:
            self._log_failure("delete_by_prefix", prefix, e)

    async def exists(self, key: str) -> bool:
        try:
            return await self.backend.exists(key)
        except Exception as e:
            self._log_failure("exists", key, e)
            return False

    async def _get_snapshot(self, key: str, namespace: str) -> Optional[FlagSnapshot]:
        data = await self.get(key)
        if data is None:
            flag_cache_miss_total.labels(namespace=namespace).inc()
            return None
        try:
            snapshot = FlagSnapshot.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            # Unreadable entry (older format, manual edit); treat as a miss
            self._log_failure("decode", key, e)
            flag_cache_miss_total.labels(namespace=namespace).inc()
            return None
        flag_cache_hits_total.labels(namespace=namespace).inc()
        return snapshot

    async def get_by_name(self, name: str) -> Optional[FlagSnapshot]:
        return await self._get_snapshot(name_key(name), "name")

    async def set_by_name(self, snapshot: FlagSnapshot) -> None:
        await self.set(name_key(snapshot.name), snapshot.to_dict())

    async def get_by_id(self, flag_id: int) -> Optional[FlagSnapshot]:
        return await self._get_snapshot(id_key(flag_id), "id")

    async def set_by_id(self, snapshot: FlagSnapshot) -> None:
        await self.set(id_key(snapshot.id), snapshot.to_dict())

    async def get_all(self) -> Optional[List[FlagSnapshot]]:
        data = await self.get(ALL_FLAGS_KEY)
        if data is None:
            flag_cache_miss_total.labels(namespace="all").inc()
            return None
        try:
            snapshots = [FlagSnapshot.from_dict(item) for item in data]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            self._log_failure("decode", ALL_FLAGS_KEY, e)
            flag_cache_miss_total.labels(namespace="all").inc()
            return None
        flag_cache_hits_total.labels(namespace="all").inc()
        return snapshots

    async def set_all(self, snapshots: List[FlagSnapshot]) -> None:
        await self.set(ALL_FLAGS_KEY, [s.to_dict() for s in snapshots])
