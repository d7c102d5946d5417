"""Usage Counter - monthly report quota per user.

Usage is embedded on the user record:
    users.usage = {reports_this_month, last_reset_date, period: "YYYY-MM"}

`check()` is an optimistic pre-flight. `consume()` is the authoritative gate:
a single find_one_and_update whose filter carries both the cap and the
current period, so two concurrent submissions cannot both take the last slot.

Rollover is detected lazily on access and applied with a conditional update
keyed on the stored period, so it happens exactly once per month however
many requests race on the boundary.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pymongo import ReturnDocument
from database import database
from models import AdmissionDecision, PlanName, UsageSnapshot, UserRole
from services.plan_registry import plan_registry
from services.subscription_state import as_utc, subscription_state
import logging

logger = logging.getLogger(__name__)

LIMIT_REACHED_MESSAGE = (
    "You have reached your monthly report limit. "
    "Upgrade to Premium for unlimited reports."
)


def period_key(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def stored_period(usage: Optional[Dict[str, Any]]) -> Optional[str]:
    """Period of a usage sub-document; legacy records derive it from last_reset_date."""
    if not usage:
        return None
    if usage.get("period"):
        return usage["period"]
    last_reset = as_utc(usage.get("last_reset_date"))
    return period_key(last_reset) if last_reset else None


class UsageCounterService:

    async def rollover(self, user_id: str, now: Optional[datetime] = None) -> UsageSnapshot:
        """Reset the monthly counter if the stored period is not the current one."""
        now = now or datetime.now(timezone.utc)
        current = period_key(now)
        db = database.get_db()

        user = await db.users.find_one({"user_id": user_id}, {"_id": 0, "usage": 1})
        if user is None:
            return UsageSnapshot(reports_this_month=0, last_reset_date=None, period=current)

        usage = user.get("usage")
        fresh = {"reports_this_month": 0, "last_reset_date": now, "period": current}

        if not usage:
            await db.users.update_one(
                {"user_id": user_id, "usage": {"$exists": False}},
                {"$set": {"usage": fresh}}
            )
        elif stored_period(usage) != current:
            # Guard on the raw stored value so only one racer resets
            result = await db.users.update_one(
                {"user_id": user_id, "usage.period": usage.get("period")},
                {"$set": {
                    "usage.reports_this_month": 0,
                    "usage.last_reset_date": now,
                    "usage.period": current,
                }}
            )
            if result.modified_count:
                logger.info(
                    f"USAGE_ROLLED_OVER user_id={user_id} from={stored_period(usage)} to={current} "
                    f"previous_count={usage.get('reports_this_month', 0)}"
                )
        elif not usage.get("period"):
            # Legacy record already in the current month: backfill the guard, keep the count
            await db.users.update_one(
                {"user_id": user_id, "usage.period": None},
                {"$set": {"usage.period": current}}
            )
        else:
            return UsageSnapshot(**usage)

        user = await db.users.find_one({"user_id": user_id}, {"_id": 0, "usage": 1})
        return UsageSnapshot(**((user or {}).get("usage") or fresh))

    async def check(self, user: Dict[str, Any], now: Optional[datetime] = None) -> AdmissionDecision:
        """May this user submit a report now? Never increments."""
        now = now or datetime.now(timezone.utc)
        user_id = user["user_id"]

        if user.get("role") == UserRole.ADMIN.value:
            return AdmissionDecision(allowed=True, reason="admin_bypass", current_plan=PlanName.PREMIUM)

        # Demotes and persists an expired premium record before falling through
        effective = await subscription_state.get_effective(user_id, now=now)
        if effective.is_premium_active:
            return AdmissionDecision(allowed=True, reason="premium_active", current_plan=PlanName.PREMIUM)

        free_plan = await plan_registry.get_plan(PlanName.FREE)
        limit = plan_registry.report_limit(free_plan)
        usage = await self.rollover(user_id, now=now)
        used = usage.reports_this_month

        if limit is None:
            return AdmissionDecision(
                allowed=True,
                reason="unlimited_plan",
                current_plan=PlanName.FREE,
                reports_used=used,
                counts_against_quota=True,
            )

        if used >= limit:
            return AdmissionDecision(
                allowed=False,
                reason=LIMIT_REACHED_MESSAGE,
                current_plan=PlanName.FREE,
                reports_used=used,
                reports_limit=limit,
                remaining_reports=0,
            )

        return AdmissionDecision(
            allowed=True,
            reason="within_quota",
            current_plan=PlanName.FREE,
            reports_used=used,
            reports_limit=limit,
            remaining_reports=limit - used,
            counts_against_quota=True,
        )

    async def consume(self, user_id: str, limit: Optional[int], now: Optional[datetime] = None) -> bool:
        """Atomically take one report slot. False means the cap was reached."""
        now = now or datetime.now(timezone.utc)
        current = period_key(now)
        db = database.get_db()

        query: Dict[str, Any] = {"user_id": user_id, "usage.period": current}
        if limit is not None:
            query["usage.reports_this_month"] = {"$lt": limit}

        for attempt in range(2):
            updated = await db.users.find_one_and_update(
                query,
                {"$inc": {"usage.reports_this_month": 1}},
                projection={"_id": 0, "usage": 1},
                return_document=ReturnDocument.AFTER,
            )
            if updated:
                return True
            if attempt == 0:
                # Period may have turned over since the pre-flight check
                snapshot = await self.rollover(user_id, now=now)
                if limit is not None and snapshot.reports_this_month >= limit:
                    break

        logger.warning(f"Report slot refused at increment for user {user_id} (limit={limit}, period={current})")
        return False

    async def release(self, user_id: str, period: str) -> bool:
        """Give back a slot taken by consume() when the report write then failed."""
        db = database.get_db()
        result = await db.users.update_one(
            {"user_id": user_id, "usage.period": period, "usage.reports_this_month": {"$gt": 0}},
            {"$inc": {"usage.reports_this_month": -1}}
        )
        return bool(result.modified_count)

    async def snapshot(self, user: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Read-only usage view for the UI."""
        now = now or datetime.now(timezone.utc)
        effective = await subscription_state.get_effective(user["user_id"], now=now)
        usage = await self.rollover(user["user_id"], now=now)

        unlimited = user.get("role") == UserRole.ADMIN.value or effective.is_premium_active
        limit = None
        if not unlimited:
            limit = plan_registry.report_limit(await plan_registry.get_plan(PlanName.FREE))

        return {
            "reports_this_month": usage.reports_this_month,
            "reports_limit": limit,
            "remaining_reports": None if limit is None else max(limit - usage.reports_this_month, 0),
            "unlimited": limit is None,
            "period": usage.period,
            "last_reset_date": usage.last_reset_date.isoformat() if usage.last_reset_date else None,
            "current_plan": effective.plan.value,
        }


usage_counter = UsageCounterService()
