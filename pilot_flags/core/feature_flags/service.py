"""Feature flag service: checks, management and cache refresh.

Writes go to the store first; the cache is purged before any mutation
returns, so a caller never sees a successful write paired with a stale
snapshot.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from pilot_flags.core.feature_flags.cache import FlagCache
from pilot_flags.core.feature_flags.engine import EvaluationEngine
from pilot_flags.core.feature_flags.invalidation import InvalidationCoordinator
from pilot_flags.core.feature_flags.models import (
    AddWhitelistRequest,
    CheckRequest,
    CheckResult,
    CreateFlagRequest,
    FeatureFlag,
    FlagSnapshot,
    PilotWhitelistEntry,
    UpdateFlagRequest,
    utcnow,
)
from pilot_flags.core.feature_flags.store import FlagStore

logger = logging.getLogger(__name__)


class FeatureFlagService:
    """Entry point used by the HTTP layer."""

    def __init__(
        self,
        store: FlagStore,
        cache: FlagCache,
        engine: Optional[EvaluationEngine] = None,
        invalidator: Optional[InvalidationCoordinator] = None,
    ):
        self.store = store
        self.cache = cache
        self.engine = engine or EvaluationEngine(store, cache)
        self.invalidator = invalidator or InvalidationCoordinator(cache)

    # Evaluation

    async def check_flag(self, request: CheckRequest) -> CheckResult:
        return await self.engine.check_flag(request)

    async def check_multiple(self, requests: Sequence[CheckRequest]) -> List[CheckResult]:
        return await self.engine.check_multiple(requests)

    # Reads

    async def get_all_flags(self) -> List[FlagSnapshot]:
        cached = await self.cache.get_all()
        if cached is not None:
            return cached

        snapshots = [FlagSnapshot.from_flag(f) for f in await self.store.list_flags()]
        await self.cache.set_all(snapshots)
        return snapshots

    async def get_flag_by_id(self, flag_id: int) -> Optional[FlagSnapshot]:
        cached = await self.cache.get_by_id(flag_id)
        if cached is not None:
            return cached

        flag = await self.store.find_flag_by_id(flag_id)
        if flag is None:
            return None
        snapshot = FlagSnapshot.from_flag(flag)
        await self.cache.set_by_id(snapshot)
        return snapshot

    async def get_flag_by_name(self, name: str) -> Optional[FlagSnapshot]:
        return await self.engine.load_snapshot(name)

    async def list_whitelist(self, flag_id: int) -> List[PilotWhitelistEntry]:
        return await self.store.list_whitelist_entries(flag_id)

    # Writes

    async def create_flag(self, request: CreateFlagRequest) -> FlagSnapshot:
        request.validate()
        flag = await self.store.save_flag(
            FeatureFlag(
                name=request.name,
                description=request.description,
                enabled=request.enabled,
                created_by=request.created_by,
            )
        )
        await self.invalidator.invalidate_all("create_flag")
        logger.info(
            f"Feature flag created: {flag.name}",
            extra={"feature": flag.name, "flag_id": flag.id, "operation": "create_flag"},
        )
        return FlagSnapshot.from_flag(flag)

    async def update_flag(
        self, flag_id: int, request: UpdateFlagRequest
    ) -> Optional[FlagSnapshot]:
        request.validate()
        current = await self.store.find_flag_by_id(flag_id)
        if current is None:
            return None

        current.description = request.description
        current.enabled = request.enabled
        current.updated_by = request.updated_by
        current.updated_at = utcnow()
        flag = await self.store.save_flag(current)

        await self.invalidator.invalidate_all("update_flag")
        logger.info(
            f"Feature flag updated: {flag.name}",
            extra={"feature": flag.name, "flag_id": flag.id, "operation": "update_flag"},
        )
        return FlagSnapshot.from_flag(flag)

    async def delete_flag(self, flag_id: int) -> bool:
        deleted = await self.store.delete_flag(flag_id)
        if not deleted:
            return False
        await self.invalidator.invalidate_all("delete_flag")
        logger.info(
            f"Feature flag deleted: {flag_id}",
            extra={"flag_id": flag_id, "operation": "delete_flag"},
        )
        return True

    async def add_to_whitelist(self, request: AddWhitelistRequest) -> PilotWhitelistEntry:
        request.validate()
        entry = await self.store.save_whitelist_entry(request.to_entry())
        await self.invalidator.invalidate_all("add_to_whitelist")
        logger.info(
            "Pilot whitelist entry added",
            extra={
                "flag_id": entry.feature_flag_id,
                "entry_id": entry.id,
                "operation": "add_to_whitelist",
            },
        )
        return entry

    async def remove_from_whitelist(self, entry_id: int) -> bool:
        deleted = await self.store.delete_whitelist_entry(entry_id)
        if not deleted:
            return False
        await self.invalidator.invalidate_all("remove_from_whitelist")
        logger.info(
            "Pilot whitelist entry removed",
            extra={"entry_id": entry_id, "operation": "remove_from_whitelist"},
        )
        return True

    async def refresh_cache(self) -> int:
        """Purge, then eagerly reload the listing and every per-name snapshot.

        Returns the number of flags loaded.
        """
        await self.invalidator.invalidate_all("refresh_cache")
        snapshots = [FlagSnapshot.from_flag(f) for f in await self.store.list_flags()]
        await self.cache.set_all(snapshots)
        for snapshot in snapshots:
            await self.cache.set_by_name(snapshot)
        logger.info(
            f"Flag cache refreshed with {len(snapshots)} flags",
            extra={"operation": "refresh_cache"},
        )
        return len(snapshots)
