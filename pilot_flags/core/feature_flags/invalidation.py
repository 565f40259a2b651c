"""Purge cached flag data after writes."""

from __future__ import annotations

import logging

from pilot_flags.core.feature_flags.cache import ALL_FLAGS_KEY, FLAG_KEY_PREFIX, FlagCache
from pilot_flags.utils.metrics import flag_cache_invalidations_total

logger = logging.getLogger(__name__)


class InvalidationCoordinator:
    """Removes every cached snapshot and the flag listing.

    Both namespaces go together: a whitelist change alters the per-name
    snapshot and the listing alike, and per-id entries embed the same data.
    """

    def __init__(self, cache: FlagCache):
        self.cache = cache

    async def invalidate_all(self, operation: str = "mutation") -> None:
        await self.cache.invalidate_by_prefix(FLAG_KEY_PREFIX)
        await self.cache.invalidate(ALL_FLAGS_KEY)
        flag_cache_invalidations_total.inc()
        logger.debug("Flag cache invalidated", extra={"operation": operation})
