"""Subscription State - per-user billing state and its transitions.

One document per user in `subscriptions` (unique user_id). A summary of the
effective state is written through to `users.subscription` after every
mutation so profile reads do not need a join.

State machine (status):
  pending  --confirm-->   active
  pending  --fail-->      past_due
  active   --period end passed (lazy, on read)--> expired (plan reset to free)
  expired / past_due --new checkout + confirm--> active

Lazy expiry: `compute_effective` is pure and is applied on every read path.
`get_effective` persists the correction with a conditional update, so a
record nobody reads stays `active` in storage past its period end. Nothing
sweeps subscriptions in the background.

Idempotency: `settled_references` holds every correlation id already
confirmed. Confirmation filters on `settled_references: {$ne: id}` so a
duplicate or racing delivery matches nothing and is a no-op.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional, Tuple, Any
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from database import database
from models import (
    AuditAction, BillingInterval, EffectiveSubscription, PaymentFailure,
    PaymentMethodKind, PaymentRequest, PlanName, SubscriptionStatus,
)
from services.plan_registry import plan_registry
from utils.audit import create_audit_log
import calendar
import os
import logging

logger = logging.getLogger(__name__)

SUMMARY_FIELDS = (
    "plan", "status", "current_period_start", "current_period_end", "cancel_at_period_end",
)


# ============================================================================
# PURE HELPERS
# ============================================================================

def as_utc(value) -> Optional[datetime]:
    """Normalize stored timestamps (naive UTC from Mongo, ISO strings) to aware UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_interval(start: datetime, interval: BillingInterval) -> datetime:
    """Add one billing interval, clamping to the last day of a shorter month."""
    months = 12 if interval == BillingInterval.YEAR else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def compute_effective(subscription: Optional[Dict[str, Any]], now: datetime) -> EffectiveSubscription:
    """Lazily-corrected view of a subscription document. Never touches storage.

    An `active` paid record whose period end has passed reads as free/expired.
    A record with cancel_at_period_end stays premium until that same moment,
    so cancellation needs no separate expiry transition.
    """
    if not subscription:
        return EffectiveSubscription()

    try:
        plan = PlanName(subscription.get("plan") or PlanName.FREE.value)
    except ValueError:
        plan = PlanName.FREE
    try:
        sub_status = SubscriptionStatus(subscription.get("status") or SubscriptionStatus.ACTIVE.value)
    except ValueError:
        sub_status = SubscriptionStatus.ACTIVE

    period_start = as_utc(subscription.get("current_period_start"))
    period_end = as_utc(subscription.get("current_period_end"))
    cancel_flag = bool(subscription.get("cancel_at_period_end", False))

    if (
        sub_status == SubscriptionStatus.ACTIVE
        and plan != PlanName.FREE
        and period_end is not None
        and period_end < now
    ):
        return EffectiveSubscription(
            plan=PlanName.FREE,
            status=SubscriptionStatus.EXPIRED,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=False,
            expired_on_read=True,
        )

    return EffectiveSubscription(
        plan=plan,
        status=sub_status,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=cancel_flag,
    )


def public_view(subscription: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    """JSON-safe effective view for API responses."""
    effective = compute_effective(subscription, now or datetime.now(timezone.utc))
    view = effective.model_dump(mode="json", exclude={"expired_on_read"})
    view["is_premium"] = effective.is_premium_active
    if subscription:
        view["gateway"] = subscription.get("gateway")
        view["pending_reference"] = (
            subscription.get("gateway_reference")
            if subscription.get("status") == SubscriptionStatus.PENDING.value
            else None
        )
    return view


# ============================================================================
# SERVICE
# ============================================================================

class SubscriptionStateService:
    """Reads and transitions per-user subscription records."""

    async def _sync_user_summary(self, db, subscription: Optional[Dict[str, Any]]):
        """Write the denormalized summary through to users.subscription."""
        if not subscription:
            return
        summary = {field: subscription.get(field) for field in SUMMARY_FIELDS}
        summary["updated_at"] = datetime.now(timezone.utc)
        await db.users.update_one(
            {"user_id": subscription["user_id"]},
            {"$set": {"subscription": summary}}
        )

    async def get_record(self, user_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    async def get_effective(self, user_id: str, now: Optional[datetime] = None) -> EffectiveSubscription:
        """Effective subscription; persists lazy expiry before returning."""
        now = now or datetime.now(timezone.utc)
        db = database.get_db()

        subscription = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})
        effective = compute_effective(subscription, now)

        if effective.expired_on_read:
            # Conditional so concurrent readers converge; only the first one writes
            updated = await db.subscriptions.find_one_and_update(
                {
                    "user_id": user_id,
                    "status": SubscriptionStatus.ACTIVE.value,
                    "plan": {"$ne": PlanName.FREE.value},
                    "current_period_end": {"$lt": now},
                },
                {"$set": {
                    "plan": PlanName.FREE.value,
                    "status": SubscriptionStatus.EXPIRED.value,
                    "cancel_at_period_end": False,
                    "expired_at": now,
                    "updated_at": now,
                }},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            if updated:
                await self._sync_user_summary(db, updated)
                logger.info(
                    f"SUBSCRIPTION_EXPIRED user_id={user_id} plan={subscription.get('plan')} "
                    f"period_end={effective.current_period_end}"
                )
                await create_audit_log(
                    action=AuditAction.SUBSCRIPTION_EXPIRED,
                    actor_role="SYSTEM",
                    user_id=user_id,
                    resource_type="subscription",
                    resource_id=user_id,
                    before_state={"plan": subscription.get("plan"), "status": subscription.get("status")},
                    after_state={"plan": PlanName.FREE.value, "status": SubscriptionStatus.EXPIRED.value},
                    reason_code="PERIOD_ENDED",
                )

        return effective

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def subscribe_free(self, user_id: str) -> Tuple[bool, str, Dict[str, Any]]:
        """Put the user on free/active with no billing period."""
        db = database.get_db()
        now = datetime.now(timezone.utc)

        existing = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})
        if (
            existing
            and existing.get("plan") == PlanName.FREE.value
            and existing.get("status") == SubscriptionStatus.ACTIVE.value
        ):
            return True, "Already on the free plan", public_view(existing, now)

        updated = await db.subscriptions.find_one_and_update(
            {"user_id": user_id},
            {
                "$set": {
                    "plan": PlanName.FREE.value,
                    "status": SubscriptionStatus.ACTIVE.value,
                    "current_period_start": now,
                    "current_period_end": None,
                    "cancel_at_period_end": False,
                    "updated_at": now,
                },
                "$setOnInsert": {
                    "created_at": now,
                    "settled_references": [],
                    "metadata": {},
                },
            },
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        await self._sync_user_summary(db, updated)

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_FREE_ACTIVATED,
            actor_role="user",
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"plan": existing.get("plan"), "status": existing.get("status")} if existing else None,
            after_state={"plan": PlanName.FREE.value, "status": SubscriptionStatus.ACTIVE.value},
        )
        logger.info(f"Free plan activated for user {user_id}")
        return True, "Subscribed to free plan", public_view(updated, now)

    async def begin_paid_checkout(
        self,
        user: Dict[str, Any],
        plan_name: PlanName,
        payment_method: PaymentMethodKind = PaymentMethodKind.CARD,
        phone_number: Optional[str] = None,
        gateway=None,
    ) -> Tuple[bool, str, Dict[str, Any]]:
        """Start a paid checkout with the configured gateway.

        Re-issuing supersedes any earlier pending correlation id. A user who
        already holds unexpired premium keeps `active` while the renewal is
        pending.

        Returns:
            (success, message, details)
        """
        from services.payment_gateway import get_payment_gateway

        user_id = user["user_id"]
        if plan_name == PlanName.FREE:
            return False, "The free plan does not require payment", {"error_code": "NO_PAYMENT_REQUIRED"}

        plan = await plan_registry.get_plan(plan_name)
        if plan is None:
            return False, "Plan not found or no longer available", {"error_code": "PLAN_UNAVAILABLE"}

        gateway = gateway or get_payment_gateway()
        frontend_url = os.getenv("FRONTEND_URL", "http://localhost:3000")
        request = PaymentRequest(
            amount=Decimal(str(plan.price)),
            currency=plan.currency,
            payer_email=user.get("email") or f"{user_id}@users.invalid",
            payer_name=user.get("name"),
            payment_method=payment_method,
            phone_number=phone_number,
            callback_url=os.getenv("PAYMENT_CALLBACK_URL") or f"{frontend_url}/subscription/callback",
            narrative=f"{plan.display_name} Subscription",
            metadata={
                "user_id": user_id,
                "plan": plan.name.value,
                "payment_method": payment_method.value,
            },
        )

        result = await gateway.initiate(request)
        if isinstance(result, PaymentFailure):
            logger.warning(
                f"Checkout failed for user {user_id} via {gateway.provider_name}: {result.reason_message}"
            )
            return False, result.reason_message, {
                "error_code": "GATEWAY_NOT_CONFIGURED" if result.configuration_missing else "GATEWAY_FAILURE",
                "retryable": result.retryable,
            }

        db = database.get_db()
        now = datetime.now(timezone.utc)
        # Lazy expiry is persisted before the pending transition
        renewing = (await self.get_effective(user_id, now)).is_premium_active

        set_doc = {
            "gateway": result.provider,
            "gateway_reference": result.correlation_id,
            "gateway_checkout_reference": result.checkout_reference,
            "pending_plan": plan.name.value,
            "pending_since": now,
            "updated_at": now,
        }
        if not renewing:
            set_doc["status"] = SubscriptionStatus.PENDING.value

        try:
            # A webhook may already have settled this reference; never regress it to pending
            updated = await db.subscriptions.find_one_and_update(
                {"user_id": user_id, "settled_references": {"$ne": result.correlation_id}},
                {
                    "$set": set_doc,
                    "$setOnInsert": {
                        "plan": PlanName.FREE.value,
                        "current_period_start": None,
                        "current_period_end": None,
                        "cancel_at_period_end": False,
                        "settled_references": [],
                        "metadata": {},
                        "created_at": now,
                    },
                },
                upsert=True,
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            updated = None

        if updated:
            await self._sync_user_summary(db, updated)
        else:
            logger.info(f"Checkout reference {result.correlation_id} already settled before initiation returned")

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CHECKOUT_STARTED,
            actor_role="user",
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            metadata={
                "plan": plan.name.value,
                "provider": result.provider,
                "correlation_id": result.correlation_id,
                "payment_method": payment_method.value,
                "renewal": renewing,
            },
        )
        logger.info(
            f"Checkout started user_id={user_id} provider={result.provider} "
            f"reference={result.correlation_id} method={payment_method.value}"
        )
        return True, "Payment initiated", {"session": result, "plan": plan, "renewal": renewing}

    async def confirm_payment(
        self,
        correlation_id: str,
        user_id: str,
        plan_name: PlanName,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        provider: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        """Activate a paid period for a successful payment. Idempotent per correlation id.

        Returns:
            (changed, reason, subscription_view)
        """
        db = database.get_db()
        now = datetime.now(timezone.utc)

        existing = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})
        if existing and correlation_id in (existing.get("settled_references") or []):
            return False, "already_settled", public_view(existing, now)

        catalog_plan = await plan_registry.get_plan(plan_name)
        interval = catalog_plan.interval if catalog_plan else BillingInterval.MONTH
        period_start = as_utc(paid_at) or now
        period_end = add_interval(period_start, interval)

        if existing:
            existing_end = as_utc(existing.get("current_period_end"))
            if (
                existing.get("status") == SubscriptionStatus.ACTIVE.value
                and existing.get("plan") == plan_name.value
                and existing_end is not None
                and existing_end >= period_end
            ):
                # Older event than what produced the current period; record as settled only
                await db.subscriptions.update_one(
                    {"user_id": user_id},
                    {"$addToSet": {"settled_references": correlation_id}}
                )
                logger.info(
                    f"PAYMENT_EVENT_STALE user_id={user_id} reference={correlation_id} "
                    f"existing_end={existing_end.isoformat()} event_end={period_end.isoformat()}"
                )
                await create_audit_log(
                    action=AuditAction.PAYMENT_EVENT_STALE,
                    actor_role="SYSTEM",
                    user_id=user_id,
                    resource_type="subscription",
                    resource_id=user_id,
                    metadata={"correlation_id": correlation_id, "event_period_end": period_end.isoformat()},
                )
                return False, "stale_event", public_view(existing, now)

        metadata = dict((existing or {}).get("metadata") or {})
        metadata.update({
            "last_payment_amount": str(amount) if amount is not None else None,
            "last_payment_currency": currency,
            "last_payment_reference": correlation_id,
            "last_payment_at": period_start,
            "last_payment_method": payment_method,
            "last_payment_error": None,
        })

        try:
            updated = await db.subscriptions.find_one_and_update(
                {"user_id": user_id, "settled_references": {"$ne": correlation_id}},
                {
                    "$set": {
                        "plan": plan_name.value,
                        "status": SubscriptionStatus.ACTIVE.value,
                        "current_period_start": period_start,
                        "current_period_end": period_end,
                        "cancel_at_period_end": False,
                        "cancelled_at": None,
                        "gateway": provider,
                        "gateway_reference": correlation_id,
                        "pending_plan": None,
                        "metadata": metadata,
                        "updated_at": now,
                    },
                    "$addToSet": {"settled_references": correlation_id},
                    "$setOnInsert": {"created_at": now},
                },
                upsert=True,
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Filter missed because another delivery settled it first
            return False, "already_settled", None

        if not updated:
            return False, "already_settled", None

        await self._sync_user_summary(db, updated)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_ACTIVATED,
            actor_role="SYSTEM",
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"plan": existing.get("plan"), "status": existing.get("status")} if existing else None,
            after_state={"plan": plan_name.value, "status": SubscriptionStatus.ACTIVE.value},
            metadata={
                "correlation_id": correlation_id,
                "provider": provider,
                "amount": str(amount) if amount is not None else None,
                "currency": currency,
                "current_period_end": period_end.isoformat(),
            },
        )
        logger.info(
            f"SUBSCRIPTION_ACTIVATED user_id={user_id} plan={plan_name.value} "
            f"reference={correlation_id} period_end={period_end.isoformat()}"
        )
        return True, "activated", public_view(updated, now)

    async def mark_payment_failed(
        self,
        correlation_id: str,
        reason: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        """Record a failed payment against the record that initiated it.

        Unknown, superseded or already-settled references are no-ops. A
        failed renewal on unexpired premium keeps access and only records
        the error.

        Returns:
            (changed, reason, subscription_view)
        """
        db = database.get_db()
        now = datetime.now(timezone.utc)

        subscription = await db.subscriptions.find_one({"gateway_reference": correlation_id}, {"_id": 0})
        if not subscription:
            return False, "no_matching_subscription", None

        if correlation_id in (subscription.get("settled_references") or []):
            return False, "already_settled", public_view(subscription, now)

        if subscription.get("status") not in (SubscriptionStatus.PENDING.value, SubscriptionStatus.ACTIVE.value):
            return False, "status_not_eligible", public_view(subscription, now)

        user_id = subscription["user_id"]
        error_doc = {"reference": correlation_id, "reason": reason, "at": now}
        guard = {
            "user_id": user_id,
            "gateway_reference": correlation_id,
            "settled_references": {"$ne": correlation_id},
        }

        if compute_effective(subscription, now).is_premium_active:
            await db.subscriptions.update_one(
                guard,
                {"$set": {"metadata.last_payment_error": error_doc, "pending_plan": None, "updated_at": now}}
            )
            logger.info(f"Renewal payment failed for user {user_id}, current period retained")
            outcome = "renewal_failed_access_retained"
            updated = await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})
        else:
            guard["status"] = {"$in": [SubscriptionStatus.PENDING.value, SubscriptionStatus.ACTIVE.value]}
            updated = await db.subscriptions.find_one_and_update(
                guard,
                {"$set": {
                    "status": SubscriptionStatus.PAST_DUE.value,
                    "metadata.last_payment_error": error_doc,
                    "pending_plan": None,
                    "updated_at": now,
                }},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            if not updated:
                return False, "superseded", None
            await self._sync_user_summary(db, updated)
            outcome = "marked_past_due"

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_PAYMENT_FAILED,
            actor_role="SYSTEM",
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"status": subscription.get("status")},
            after_state={"status": (updated or {}).get("status")},
            metadata={"correlation_id": correlation_id, "reason": reason, "outcome": outcome},
        )
        logger.warning(f"SUBSCRIPTION_PAYMENT_FAILED user_id={user_id} reference={correlation_id} outcome={outcome}")
        return True, outcome, public_view(updated, now)

    async def cancel(self, user_id: str) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        """Schedule a downgrade at period end. Access is not revoked now."""
        effective = await self.get_effective(user_id)
        if effective.plan == PlanName.FREE:
            return False, "You are on the free plan. There is nothing to cancel.", None

        db = database.get_db()
        now = datetime.now(timezone.utc)
        if effective.cancel_at_period_end:
            return True, "Cancellation already scheduled", public_view(await self.get_record(user_id), now)

        updated = await db.subscriptions.find_one_and_update(
            {"user_id": user_id, "plan": {"$ne": PlanName.FREE.value}},
            {"$set": {"cancel_at_period_end": True, "cancelled_at": now, "updated_at": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            return False, "You are on the free plan. There is nothing to cancel.", None

        await self._sync_user_summary(db, updated)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCEL_SCHEDULED,
            actor_role="user",
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            metadata={"current_period_end": effective.current_period_end.isoformat() if effective.current_period_end else None},
        )
        logger.info(f"Cancellation scheduled for user {user_id} at {effective.current_period_end}")
        return True, "Subscription will be cancelled at the end of the billing period", public_view(updated, now)

    async def reactivate(self, user_id: str) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        """Clear a scheduled cancellation and set status active."""
        effective = await self.get_effective(user_id)
        if effective.plan == PlanName.FREE:
            return False, "Free plan subscriptions cannot be reactivated. Please subscribe to Premium.", None

        db = database.get_db()
        now = datetime.now(timezone.utc)
        updated = await db.subscriptions.find_one_and_update(
            {"user_id": user_id, "plan": {"$ne": PlanName.FREE.value}},
            {"$set": {
                "cancel_at_period_end": False,
                "cancelled_at": None,
                "status": SubscriptionStatus.ACTIVE.value,
                "updated_at": now,
            }},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            return False, "Free plan subscriptions cannot be reactivated. Please subscribe to Premium.", None

        await self._sync_user_summary(db, updated)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_REACTIVATED,
            actor_role="user",
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"status": effective.status.value, "cancel_at_period_end": effective.cancel_at_period_end},
            after_state={"status": SubscriptionStatus.ACTIVE.value, "cancel_at_period_end": False},
        )
        logger.info(f"Subscription reactivated for user {user_id}")
        return True, "Subscription reactivated", public_view(updated, now)


subscription_state = SubscriptionStateService()
