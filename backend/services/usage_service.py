"""
Usage Metering

Monthly receipt-scanner quota per user, keyed by (user_id, YYYY-MM) in the
server's local calendar.  A month with no row counts as zero; the next month
simply starts a new row, so there is no rollover job.

check() is read-only.  increment() is a single conditional upsert: the row
only advances while count < limit, so two concurrent requests at the quota
boundary cannot both be counted.
"""
import logging
from datetime import datetime
from typing import Optional

import aiosqlite

from models.schemas import UsageSnapshot

logger = logging.getLogger("bizznex.usage")

# None = unlimited
UNLIMITED = None
PLAN_QUOTAS: dict[str, Optional[int]] = {
    "starter": 100,
    "pro": UNLIMITED,
}

LIMIT_REACHED_MESSAGE = (
    "You have reached your monthly limit. "
    "Please upgrade your plan or wait until next month."
)


class QuotaExceeded(Exception):
    """Raised when a scan is attempted with no quota left this month."""
    kind = "QuotaExceeded"

    def __init__(self, usage: UsageSnapshot):
        super().__init__(LIMIT_REACHED_MESSAGE)
        self.usage = usage


def plan_limit(plan: Optional[str]) -> Optional[int]:
    """Monthly scan limit for a plan.  Unknown plans get 0."""
    return PLAN_QUOTAS.get(plan or "starter", 0)


def current_month(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{now.year}-{now.month:02d}"


def build_snapshot(current_usage: int, limit: Optional[int]) -> UsageSnapshot:
    if limit is None:
        return UsageSnapshot(
            current_usage=current_usage,
            limit=None,
            remaining=None,
            can_use_feature=True,
            unlimited=True,
        )
    return UsageSnapshot(
        current_usage=current_usage,
        limit=limit,
        remaining=max(0, limit - current_usage),
        can_use_feature=current_usage < limit,
    )


class UsageMeter:
    def __init__(
        self,
        db: aiosqlite.Connection,
        user_id: str,
        plan: Optional[str],
        month: Optional[str] = None,
    ):
        self.db = db
        self.user_id = user_id
        self.plan = plan
        self.limit = plan_limit(plan)
        self.month = month or current_month()

    async def _read_count(self) -> int:
        async with self.db.execute(
            "SELECT count FROM receipt_scanner_usage WHERE user_id = ? AND month = ?",
            (self.user_id, self.month),
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def check(self) -> UsageSnapshot:
        """Current usage for this month.  Never mutates."""
        return build_snapshot(await self._read_count(), self.limit)

    async def increment(self) -> UsageSnapshot:
        """
        Count one scan attempt.  Raises QuotaExceeded (and leaves the count
        untouched) when the month's limit is already used up.
        """
        if self.limit is not None and self.limit <= 0:
            raise QuotaExceeded(await self.check())

        # Unlimited plans still count, they just have no ceiling.
        ceiling = self.limit if self.limit is not None else -1
        cur = await self.db.execute(
            """
            INSERT INTO receipt_scanner_usage (user_id, month, count)
            VALUES (?, ?, 1)
            ON CONFLICT(user_id, month) DO UPDATE SET
                count      = count + 1,
                updated_at = datetime('now')
            WHERE ? < 0 OR receipt_scanner_usage.count < ?
            """,
            (self.user_id, self.month, ceiling, ceiling),
        )
        changed = cur.rowcount
        await self.db.commit()

        snapshot = await self.check()
        if changed == 0:
            logger.info("Scan refused for user=%s month=%s: %d/%s used",
                        self.user_id, self.month, snapshot.current_usage, self.limit)
            raise QuotaExceeded(snapshot)

        logger.debug("Usage for user=%s month=%s now %d/%s",
                     self.user_id, self.month, snapshot.current_usage, self.limit)
        return snapshot
