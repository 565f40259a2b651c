"""Feature flag evaluation.

Decides whether a named feature is active for a caller:

1. resolve the flag snapshot (cache first, store on miss)
2. a disabled flag denies everyone
3. the caller needs a matching, unexpired whitelist entry
4. the entry's minimum app version, when both sides carry one
5. otherwise the caller is a pilot user

Evaluation never raises to its caller. Anything unexpected denies the flag.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from pilot_flags.core.feature_flags.cache import FlagCache
from pilot_flags.core.feature_flags.models import (
    CheckRequest,
    CheckResult,
    FlagSnapshot,
    utcnow,
)
from pilot_flags.core.feature_flags.store import FlagStore
from pilot_flags.core.feature_flags.versioning import is_version_greater_or_equal
from pilot_flags.utils.metrics import flag_checks_total, flag_store_reads_total

logger = logging.getLogger(__name__)

REASON_NOT_FOUND = "flag not found"
REASON_DISABLED = "flag disabled"
REASON_NOT_WHITELISTED = "not in pilot whitelist"
REASON_MIN_VERSION = "minimum version requirement: {min_version}"
REASON_PILOT_USER = "pilot user"
REASON_REQUIRED_FIELDS = "required fields missing"
REASON_EVALUATION_FAILED = "evaluation failed"


class EvaluationEngine:
    """Answers flag checks from cached snapshots."""

    def __init__(
        self,
        store: FlagStore,
        cache: FlagCache,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.clock = clock

    async def load_snapshot(self, name: str) -> Optional[FlagSnapshot]:
        """Read-through lookup by flag name. Store faults propagate."""
        snapshot = await self.cache.get_by_name(name)
        if snapshot is not None:
            return snapshot

        flag = await self.store.find_flag_by_name(name)
        if flag is None:
            flag_store_reads_total.labels(result="missing").inc()
            return None
        flag_store_reads_total.labels(result="loaded").inc()

        snapshot = FlagSnapshot.from_flag(flag)
        await self.cache.set_by_name(snapshot)
        return snapshot

    def evaluate(
        self,
        snapshot: Optional[FlagSnapshot],
        request: CheckRequest,
        now: Optional[datetime] = None,
    ) -> CheckResult:
        """Apply the decision rules to an already-resolved snapshot."""
        if snapshot is None:
            return CheckResult.deny(REASON_NOT_FOUND)

        if not snapshot.enabled:
            return CheckResult.deny(REASON_DISABLED)

        entry = snapshot.find_pilot_entry(
            request.user_identifier,
            request.user_type,
            now or self.clock(),
        )
        if entry is None:
            return CheckResult.deny(REASON_NOT_WHITELISTED)

        if entry.min_version and request.app_version:
            if not is_version_greater_or_equal(request.app_version, entry.min_version):
                return CheckResult.deny(
                    REASON_MIN_VERSION.format(min_version=entry.min_version)
                )

        return CheckResult(is_enabled=True, is_in_pilot=True, reason=REASON_PILOT_USER)

    async def check_flag(self, request: CheckRequest) -> CheckResult:
        """Evaluate one request; denies instead of raising."""
        if request is None or not request.has_required_fields():
            return self._record(CheckResult.deny(REASON_REQUIRED_FIELDS), "invalid")

        try:
            snapshot = await self.load_snapshot(request.feature_name)
            result = self.evaluate(snapshot, request)
        except Exception as e:
            logger.error(
                f"Flag evaluation failed: {e}",
                extra={"feature": request.feature_name, "reason": REASON_EVALUATION_FAILED},
            )
            return self._record(CheckResult.deny(REASON_EVALUATION_FAILED), "error")

        return self._record(result, self._outcome(result))

    async def check_multiple(self, requests: Sequence[CheckRequest]) -> List[CheckResult]:
        """Evaluate each request independently, preserving order."""
        results: List[CheckResult] = []
        for request in requests:
            results.append(await self.check_flag(request))
        return results

    @staticmethod
    def _outcome(result: CheckResult) -> str:
        if result.is_enabled:
            return "enabled"
        if result.reason == REASON_NOT_FOUND:
            return "not_found"
        if result.reason == REASON_DISABLED:
            return "disabled"
        if result.reason == REASON_NOT_WHITELISTED:
            return "not_whitelisted"
        return "version"

    @staticmethod
    def _record(result: CheckResult, outcome: str) -> CheckResult:
        flag_checks_total.labels(outcome=outcome).inc()
        return result
