"""Demo flags loaded into an empty store at startup."""

from __future__ import annotations

import logging
from datetime import timedelta

from pilot_flags.core.feature_flags.models import (
    FeatureFlag,
    PilotWhitelistEntry,
    utcnow,
)
from pilot_flags.core.feature_flags.store import FlagStore

logger = logging.getLogger(__name__)

SEED_AUTHOR = "System"

DEMO_FLAGS = [
    ("OpenBankingPilot", "Open Banking pilot", True),
    ("SealSigningPilot", "Seal Signing pilot (retired)", False),
    ("SealPilot", "Seal pilot", True),
    ("SoftLoginPilot", "Soft Login pilot", True),
]

# (flag name, user identifier, user type, min version, days until expiry)
DEMO_WHITELIST = [
    ("OpenBankingPilot", "CUST001", "Customer", "1.2.0", 30),
    ("SealPilot", "CUST002", "Customer", "1.1.0", 60),
    ("SoftLoginPilot", "EMP001", "Employee", None, 90),
]


async def seed_demo_flags(store: FlagStore) -> int:
    """Insert the demo data unless the store already holds flags.

    Returns the number of flags created.
    """
    if await store.list_flags():
        return 0

    now = utcnow()
    ids = {}
    for name, description, enabled in DEMO_FLAGS:
        flag = await store.save_flag(
            FeatureFlag(
                name=name,
                description=description,
                enabled=enabled,
                created_by=SEED_AUTHOR,
                created_at=now,
            )
        )
        ids[name] = flag.id

    for flag_name, user, user_type, min_version, days in DEMO_WHITELIST:
        expires_at = now + timedelta(days=days)
        await store.save_whitelist_entry(
            PilotWhitelistEntry(
                feature_flag_id=ids[flag_name],
                user_identifier=user,
                user_type=user_type,
                min_version=min_version,
                expires_at=expires_at,
                created_by=SEED_AUTHOR,
                created_at=now,
            )
        )

    logger.info(f"Seeded {len(ids)} demo feature flags", extra={"operation": "seed"})
    return len(ids)
