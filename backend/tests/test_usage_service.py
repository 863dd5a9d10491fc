"""
Tests for the usage meter — plan limits, monthly keys, and the quota boundary.
"""
import asyncio
from datetime import datetime

import pytest

from conftest import set_usage
from services.usage_service import (
    LIMIT_REACHED_MESSAGE,
    QuotaExceeded,
    UsageMeter,
    build_snapshot,
    current_month,
    plan_limit,
)

MONTH = "2025-03"


async def stored_count(db, user_id="user-1", month=MONTH):
    async with db.execute(
        "SELECT count FROM receipt_scanner_usage WHERE user_id = ? AND month = ?",
        (user_id, month),
    ) as cur:
        row = await cur.fetchone()
    return row[0] if row else None


class TestPlanLimits:

    def test_starter_is_100(self):
        assert plan_limit("starter") == 100

    def test_pro_is_unlimited(self):
        assert plan_limit("pro") is None

    def test_missing_plan_defaults_to_starter(self):
        assert plan_limit(None) == 100

    def test_unknown_plan_gets_nothing(self):
        assert plan_limit("enterprise-trial") == 0


class TestCurrentMonth:

    def test_zero_padded(self):
        assert current_month(datetime(2025, 3, 31, 23, 59)) == "2025-03"

    def test_december(self):
        assert current_month(datetime(2024, 12, 1)) == "2024-12"


class TestSnapshot:

    def test_limited(self):
        s = build_snapshot(42, 100)
        assert (s.current_usage, s.limit, s.remaining, s.can_use_feature) == (42, 100, 58, True)
        assert s.unlimited is False

    def test_at_limit(self):
        s = build_snapshot(100, 100)
        assert s.remaining == 0
        assert s.can_use_feature is False

    def test_over_limit_never_negative(self):
        assert build_snapshot(130, 100).remaining == 0

    def test_unlimited_serializes_as_null(self):
        dumped = build_snapshot(7, None).model_dump(by_alias=True)
        assert dumped == {
            "currentUsage": 7, "limit": None, "remaining": None,
            "canUseFeature": True, "unlimited": True,
        }


class TestCheck:

    @pytest.mark.asyncio
    async def test_no_row_is_zero(self, db):
        s = await UsageMeter(db, "user-1", "starter", MONTH).check()
        assert s.current_usage == 0
        assert s.remaining == 100

    @pytest.mark.asyncio
    async def test_check_does_not_create_row(self, db):
        await UsageMeter(db, "user-1", "starter", MONTH).check()
        assert await stored_count(db) is None

    @pytest.mark.asyncio
    async def test_months_are_independent(self, db):
        await set_usage(db, "user-1", "2025-02", 100)
        s = await UsageMeter(db, "user-1", "starter", MONTH).check()
        assert s.current_usage == 0
        assert s.can_use_feature is True


class TestIncrement:

    @pytest.mark.asyncio
    async def test_first_increment_creates_row(self, db):
        s = await UsageMeter(db, "user-1", "starter", MONTH).increment()
        assert s.current_usage == 1
        assert s.remaining == 99
        assert await stored_count(db) == 1

    @pytest.mark.asyncio
    async def test_last_scan_allowed_then_refused(self, db):
        await set_usage(db, "user-1", MONTH, 99)
        meter = UsageMeter(db, "user-1", "starter", MONTH)

        s = await meter.increment()
        assert s.current_usage == 100
        assert s.remaining == 0
        assert s.can_use_feature is False

        with pytest.raises(QuotaExceeded) as exc:
            await meter.increment()
        assert str(exc.value) == LIMIT_REACHED_MESSAGE
        assert exc.value.usage.current_usage == 100
        assert await stored_count(db) == 100

    @pytest.mark.asyncio
    async def test_unlimited_plan_keeps_counting(self, db):
        await set_usage(db, "user-1", MONTH, 5000)
        s = await UsageMeter(db, "user-1", "pro", MONTH).increment()
        assert s.current_usage == 5001
        assert s.limit is None
        assert s.unlimited is True

    @pytest.mark.asyncio
    async def test_unknown_plan_refused_without_row(self, db):
        with pytest.raises(QuotaExceeded):
            await UsageMeter(db, "user-1", "mystery", MONTH).increment()
        assert await stored_count(db) is None

    @pytest.mark.asyncio
    async def test_users_are_independent(self, db):
        await set_usage(db, "user-1", MONTH, 100)
        s = await UsageMeter(db, "user-2", "starter", MONTH).increment()
        assert s.current_usage == 1

    @pytest.mark.asyncio
    async def test_concurrent_increments_at_boundary(self, db):
        await set_usage(db, "user-1", MONTH, 98)
        meter = UsageMeter(db, "user-1", "starter", MONTH)

        results = await asyncio.gather(
            *(meter.increment() for _ in range(5)), return_exceptions=True,
        )
        succeeded = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, QuotaExceeded)]
        assert len(succeeded) == 2
        assert len(refused) == 3
        assert await stored_count(db) == 100
