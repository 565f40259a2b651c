import os
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest
import pytest_asyncio

from pilot_flags.core.caching import CacheBackend, InMemoryCache
from pilot_flags.core.feature_flags import (
    FeatureFlag,
    FeatureFlagService,
    FlagCache,
    InMemoryFlagStore,
    PilotWhitelistEntry,
)


# List of environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "REDIS_URL",
    "REDIS_ENABLED",
    "FLAG_CACHE_TTL_SECONDS",
    "FLAG_STORE_BACKEND",
    "FLAG_STORE_PATH",
    "SEED_DEMO_FLAGS",
    "LOG_LEVEL",
    "LOG_FORMAT",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


@pytest.fixture(autouse=True)
def config_cache_isolation():
    """Reset config settings cache between tests."""
    import pilot_flags.core.config as cfg

    backup_cache = cfg._settings_cache
    cfg.reset_settings()
    yield
    cfg._settings_cache = backup_cache


class CountingFlagStore(InMemoryFlagStore):
    """In-memory store that counts lookups by name."""

    def __init__(self):
        super().__init__()
        self.name_lookups = 0

    async def find_flag_by_name(self, name: str) -> Optional[FeatureFlag]:
        self.name_lookups += 1
        return await super().find_flag_by_name(name)


class BrokenCache(CacheBackend):
    """Backend whose every operation fails, like an unreachable Redis."""

    name = "broken"

    def __init__(self):
        self.calls: List[str] = []

    def _fail(self, op: str) -> None:
        self.calls.append(op)
        raise ConnectionError(f"cache down during {op}")

    async def get(self, key: str) -> Optional[Any]:
        self._fail("get")

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        self._fail("set")

    async def delete(self, key: str) -> bool:
        self._fail("delete")

    async def delete_by_prefix(self, prefix: str) -> int:
        self._fail("delete_by_prefix")

    async def exists(self, key: str) -> bool:
        self._fail("exists")

    async def clear(self) -> None:
        self._fail("clear")


@pytest.fixture
def store() -> CountingFlagStore:
    return CountingFlagStore()


@pytest.fixture
def cache_backend() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def flag_cache(cache_backend) -> FlagCache:
    return FlagCache(cache_backend, ttl_seconds=60)


@pytest.fixture
def service(store, flag_cache) -> FeatureFlagService:
    return FeatureFlagService(store, flag_cache)


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest_asyncio.fixture
async def open_banking(store, now) -> FeatureFlag:
    """Enabled flag with CUST001 whitelisted from app version 1.2.0."""
    flag = await store.save_flag(
        FeatureFlag(name="OpenBankingPilot", enabled=True, description="Open Banking pilot")
    )
    await store.save_whitelist_entry(
        PilotWhitelistEntry(
            feature_flag_id=flag.id,
            user_identifier="CUST001",
            user_type="Customer",
            min_version="1.2.0",
            expires_at=now + timedelta(days=30),
        )
    )
    return await store.find_flag_by_id(flag.id)


@pytest_asyncio.fixture
async def seal_signing(store, now) -> FeatureFlag:
    """Disabled flag that still whitelists CUST001."""
    flag = await store.save_flag(FeatureFlag(name="SealSigningPilot", enabled=False))
    await store.save_whitelist_entry(
        PilotWhitelistEntry(
            feature_flag_id=flag.id,
            user_identifier="CUST001",
            expires_at=now + timedelta(days=30),
        )
    )
    return await store.find_flag_by_id(flag.id)


@pytest.fixture
def broken_backend() -> BrokenCache:
    return BrokenCache()
