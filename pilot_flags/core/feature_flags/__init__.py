"""Pilot feature flags.

Provides flag evaluation with:
- Read-through snapshot caching
- Pilot whitelists with user type, minimum app version and expiry
- Cache invalidation on every write
"""

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
)
from pilot_flags.core.feature_flags.service import FeatureFlagService
from pilot_flags.core.feature_flags.store import (
    FlagStore,
    InMemoryFlagStore,
    SqliteFlagStore,
    create_flag_store,
)

__all__ = [
    "AddWhitelistRequest",
    "CheckRequest",
    "CheckResult",
    "CreateFlagRequest",
    "EvaluationEngine",
    "FeatureFlag",
    "FeatureFlagService",
    "FlagCache",
    "FlagSnapshot",
    "FlagStore",
    "InMemoryFlagStore",
    "InvalidationCoordinator",
    "PilotWhitelistEntry",
    "SqliteFlagStore",
    "UpdateFlagRequest",
    "create_flag_store",
]
