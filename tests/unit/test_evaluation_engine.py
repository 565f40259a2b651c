"""Tests for flag evaluation.

Covers:
- Decision order (not found, disabled, whitelist, version gate, pilot user)
- Read-through caching and cache outage behavior
- Fail-closed handling of store faults
- Batch checks
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from pilot_flags.core.errors import StoreError
from pilot_flags.core.feature_flags import (
    CheckRequest,
    EvaluationEngine,
    FeatureFlag,
    FlagCache,
    FlagSnapshot,
    PilotWhitelistEntry,
)
from pilot_flags.core.feature_flags.engine import (
    REASON_DISABLED,
    REASON_EVALUATION_FAILED,
    REASON_NOT_FOUND,
    REASON_NOT_WHITELISTED,
    REASON_PILOT_USER,
    REASON_REQUIRED_FIELDS,
)


def _request(user="CUST001", version=None, feature="OpenBankingPilot", user_type="Customer"):
    return CheckRequest(
        feature_name=feature,
        user_identifier=user,
        user_type=user_type,
        app_version=version,
    )


@pytest.fixture
def engine(store, flag_cache) -> EvaluationEngine:
    return EvaluationEngine(store, flag_cache)


class TestDecisionRules:
    """Examples from the pilot rollout."""

    @pytest.mark.asyncio
    async def test_pilot_user_at_min_version(self, engine, open_banking):
        result = await engine.check_flag(_request(version="1.2.0"))
        assert result.is_enabled is True
        assert result.is_in_pilot is True
        assert result.reason == REASON_PILOT_USER

    @pytest.mark.asyncio
    async def test_old_app_version_denied_with_min_version(self, engine, open_banking):
        result = await engine.check_flag(_request(version="1.0.0"))
        assert result.is_enabled is False
        assert result.is_in_pilot is False
        assert "1.2.0" in result.reason

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "version,enabled",
        [("1.1.9", False), ("1.2.0", True), ("1.3.0", True), ("1.2", True), ("1.10", True)],
    )
    async def test_version_gate(self, engine, open_banking, version, enabled):
        result = await engine.check_flag(_request(version=version))
        assert result.is_enabled is enabled

    @pytest.mark.asyncio
    async def test_no_app_version_skips_gate(self, engine, open_banking):
        result = await engine.check_flag(_request(version=None))
        assert result.is_enabled is True

    @pytest.mark.asyncio
    async def test_unparsable_app_version_denied(self, engine, open_banking):
        result = await engine.check_flag(_request(version="1.2.0-beta"))
        assert result.is_enabled is False
        assert result.reason == "minimum version requirement: 1.2.0"

    @pytest.mark.asyncio
    async def test_oversized_app_version_denied_by_gate(self, engine, open_banking):
        result = await engine.check_flag(_request(version="1." + "9" * 5000))
        assert result.is_enabled is False
        assert result.reason == "minimum version requirement: 1.2.0"

    @pytest.mark.asyncio
    async def test_user_not_whitelisted(self, engine, open_banking):
        result = await engine.check_flag(_request(user="CUST999", version="1.2.0"))
        assert (result.is_enabled, result.is_in_pilot, result.reason) == (
            False,
            False,
            REASON_NOT_WHITELISTED,
        )

    @pytest.mark.asyncio
    async def test_user_type_mismatch(self, engine, open_banking):
        result = await engine.check_flag(_request(user_type="Employee", version="1.2.0"))
        assert result.reason == REASON_NOT_WHITELISTED

    @pytest.mark.asyncio
    async def test_disabled_flag_ignores_whitelist(self, engine, seal_signing):
        result = await engine.check_flag(_request(feature="SealSigningPilot"))
        assert (result.is_enabled, result.is_in_pilot, result.reason) == (
            False,
            False,
            REASON_DISABLED,
        )

    @pytest.mark.asyncio
    async def test_unknown_flag(self, engine):
        result = await engine.check_flag(_request(feature="Nope"))
        assert result.reason == REASON_NOT_FOUND
        assert result.is_enabled is False

    @pytest.mark.asyncio
    async def test_expired_entry_is_absent(self, engine, store, now):
        """Expired entries deny as not whitelisted, never as a version failure."""
        flag = await store.save_flag(FeatureFlag(name="ExpiredPilot", enabled=True))
        await store.save_whitelist_entry(
            PilotWhitelistEntry(
                feature_flag_id=flag.id,
                user_identifier="CUST001",
                min_version="9.0.0",
                expires_at=now - timedelta(days=1),
            )
        )
        result = await engine.check_flag(_request(feature="ExpiredPilot", version="1.0.0"))
        assert result.reason == REASON_NOT_WHITELISTED

    @pytest.mark.asyncio
    async def test_entry_without_expiry_never_expires(self, engine, store):
        flag = await store.save_flag(FeatureFlag(name="OpenEnded", enabled=True))
        await store.save_whitelist_entry(
            PilotWhitelistEntry(feature_flag_id=flag.id, user_identifier="CUST001")
        )
        result = await engine.check_flag(_request(feature="OpenEnded", user_type=None))
        assert result.is_enabled is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "feature,user", [(None, "CUST001"), ("OpenBankingPilot", None), ("", ""), ("X", "")]
    )
    async def test_required_fields(self, engine, store, feature, user):
        result = await engine.check_flag(CheckRequest(feature_name=feature, user_identifier=user))
        assert result.reason == REASON_REQUIRED_FIELDS
        assert store.name_lookups == 0

    def test_evaluate_is_pure(self, engine, open_banking, now):
        snapshot = FlagSnapshot.from_flag(open_banking)
        request = _request(version="1.2.0")
        first = engine.evaluate(snapshot, request, now)
        second = engine.evaluate(snapshot, request, now)
        assert (first.is_enabled, first.reason) == (second.is_enabled, second.reason)

    def test_evaluate_uses_given_time(self, engine, open_banking, now):
        snapshot = FlagSnapshot.from_flag(open_banking)
        later = now + timedelta(days=31)
        assert engine.evaluate(snapshot, _request(), later).reason == REASON_NOT_WHITELISTED


class TestCaching:
    """Read-through behavior."""

    @pytest.mark.asyncio
    async def test_second_check_served_from_cache(self, engine, store, open_banking):
        await engine.check_flag(_request(version="1.2.0"))
        await engine.check_flag(_request(version="1.2.0"))
        assert store.name_lookups == 1

    @pytest.mark.asyncio
    async def test_cache_hit_and_miss_agree(self, engine, open_banking, cache_backend):
        miss = await engine.check_flag(_request(version="1.0.0"))
        assert await cache_backend.exists("flag:name:OpenBankingPilot")
        hit = await engine.check_flag(_request(version="1.0.0"))
        assert (miss.is_enabled, miss.is_in_pilot, miss.reason) == (
            hit.is_enabled,
            hit.is_in_pilot,
            hit.reason,
        )

    @pytest.mark.asyncio
    async def test_corrupt_cached_snapshot_falls_back_to_store(
        self, engine, store, open_banking, cache_backend
    ):
        await cache_backend.set(
            "flag:name:OpenBankingPilot",
            {"id": open_banking.id, "name": "OpenBankingPilot", "enabled": True, "whitelist": ["junk"]},
        )

        result = await engine.check_flag(_request(version="1.2.0"))

        assert result.reason == REASON_PILOT_USER
        assert store.name_lookups == 1
        restored = await cache_backend.get("flag:name:OpenBankingPilot")
        assert restored["whitelist"][0]["user_identifier"] == "CUST001"

    @pytest.mark.asyncio
    async def test_missing_flag_not_cached(self, engine, store, cache_backend):
        await engine.check_flag(_request(feature="Nope"))
        await engine.check_flag(_request(feature="Nope"))
        assert store.name_lookups == 2
        assert cache_backend.keys() == []

    @pytest.mark.asyncio
    async def test_cache_outage_keeps_answers_correct(
        self, store, open_banking, broken_backend
    ):
        engine = EvaluationEngine(store, FlagCache(broken_backend))
        result = await engine.check_flag(_request(version="1.2.0"))
        assert result.is_enabled is True
        assert store.name_lookups == 1
        assert "get" in broken_backend.calls
        assert "set" in broken_backend.calls


class TestFailClosed:
    """Store faults deny instead of raising."""

    @pytest.mark.asyncio
    async def test_store_error_denies(self, engine, store):
        store.find_flag_by_name = AsyncMock(side_effect=StoreError("db down"))
        result = await engine.check_flag(_request())
        assert result.is_enabled is False
        assert result.is_in_pilot is False
        assert result.reason == REASON_EVALUATION_FAILED

    @pytest.mark.asyncio
    async def test_unexpected_error_denies(self, engine, store):
        store.find_flag_by_name = AsyncMock(side_effect=RuntimeError("boom"))
        result = await engine.check_flag(_request())
        assert result.reason == REASON_EVALUATION_FAILED

    @pytest.mark.asyncio
    async def test_load_snapshot_propagates(self, engine, store):
        store.find_flag_by_name = AsyncMock(side_effect=StoreError("db down"))
        with pytest.raises(StoreError):
            await engine.load_snapshot("OpenBankingPilot")


class TestBatch:
    """check_multiple."""

    @pytest.mark.asyncio
    async def test_order_preserved_and_bad_entry_isolated(self, engine, open_banking, seal_signing):
        results = await engine.check_multiple(
            [
                _request(version="1.2.0"),
                CheckRequest(feature_name=None, user_identifier="CUST001"),
                _request(feature="SealSigningPilot"),
                _request(user="CUST999"),
            ]
        )
        assert [r.reason for r in results] == [
            REASON_PILOT_USER,
            REASON_REQUIRED_FIELDS,
            REASON_DISABLED,
            REASON_NOT_WHITELISTED,
        ]

    @pytest.mark.asyncio
    async def test_store_fault_only_affects_its_entry(self, engine, store, open_banking):
        original = store.find_flag_by_name

        async def flaky(name):
            if name == "Broken":
                raise StoreError("bad row")
            return await original(name)

        store.find_flag_by_name = flaky
        results = await engine.check_multiple(
            [_request(feature="Broken"), _request(version="1.2.0")]
        )
        assert results[0].reason == REASON_EVALUATION_FAILED
        assert results[1].is_enabled is True

    @pytest.mark.asyncio
    async def test_empty_batch(self, engine):
        assert await engine.check_multiple([]) == []
