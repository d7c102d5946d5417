"""Plan Registry - catalog of subscription plans and their quota/feature sets.

The catalog lives in the `plans` collection (one document per plan name).
Defaults are inserted once at startup by `ensure_defaults()`; the read path
never writes. Operator edits (price, features, is_active) persist across
restarts because seeding is insert-if-absent, not upsert-overwrite.

Quota convention for `features.max_reports_per_month`:
- positive int  -> monthly cap
- -1 / negative -> unlimited
- missing / NaN -> DEFAULT_REPORT_LIMIT
"""
from typing import Dict, List, Optional, Tuple, Any
from datetime import datetime, timezone
from database import database
from models import Plan, PlanFeatures, PlanName, PlanUpdate, AuditAction
from pydantic import ValidationError
from utils.audit import create_audit_log
import math
import logging

logger = logging.getLogger(__name__)

DEFAULT_REPORT_LIMIT = 3


# ============================================================================
# DEFAULT PLAN DEFINITIONS
# ============================================================================
DEFAULT_PLANS: Dict[PlanName, Dict[str, Any]] = {
    PlanName.FREE: {
        "name": PlanName.FREE.value,
        "display_name": "Free Plan",
        "description": "Basic incident reporting with limited features",
        "price": 0,
        "currency": "KES",
        "interval": "month",
        "features": {
            "max_reports_per_month": 3,
            "unlimited_reports": False,
            "priority_support": False,
            "detailed_tracking": False,
            "download_reports": False,
            "sms_notifications": False,
            "email_notifications": True,
            "advanced_analytics": False,
            "case_notes_access": False,
        },
        "is_active": True,
    },
    PlanName.PREMIUM: {
        "name": PlanName.PREMIUM.value,
        "display_name": "Premium Plan",
        "description": "Unlimited reporting with priority support and advanced tracking",
        "price": 500,
        "currency": "KES",
        "interval": "month",
        "features": {
            "max_reports_per_month": -1,
            "unlimited_reports": True,
            "priority_support": True,
            "detailed_tracking": True,
            "download_reports": True,
            "sms_notifications": True,
            "email_notifications": True,
            "advanced_analytics": True,
            "case_notes_access": True,
        },
        "is_active": True,
    },
}

# Human-readable labels for upgrade prompts
FEATURE_METADATA: Dict[str, Dict[str, str]] = {
    "unlimited_reports": {"name": "Unlimited Reports"},
    "priority_support": {"name": "Priority Support"},
    "detailed_tracking": {"name": "Detailed Case Tracking"},
    "download_reports": {"name": "Report Downloads"},
    "sms_notifications": {"name": "SMS Notifications"},
    "email_notifications": {"name": "Email Notifications"},
    "advanced_analytics": {"name": "Advanced Analytics"},
    "case_notes_access": {"name": "Case Notes Access"},
}


def _coerce_plan_name(name) -> Optional[PlanName]:
    if isinstance(name, PlanName):
        return name
    try:
        return PlanName(str(name).lower())
    except ValueError:
        return None


class PlanRegistryService:
    """Central service for plan catalog reads and operator maintenance."""

    # -------------------------------------------------------------------------
    # Startup seeding
    # -------------------------------------------------------------------------

    async def ensure_defaults(self) -> List[str]:
        """Insert the free/premium defaults if absent. Never overwrites.

        Returns the names of plans actually inserted on this call.
        """
        db = database.get_db()
        inserted = []

        for plan_name, definition in DEFAULT_PLANS.items():
            doc = {
                **definition,
                "created_at": datetime.now(timezone.utc),
            }
            result = await db.plans.update_one(
                {"name": plan_name.value},
                {"$setOnInsert": doc},
                upsert=True,
            )
            if getattr(result, "upserted_id", None) is not None:
                inserted.append(plan_name.value)

        if inserted:
            logger.info(f"Seeded default plans: {inserted}")
            await create_audit_log(
                action=AuditAction.PLAN_DEFAULTS_SEEDED,
                actor_role="SYSTEM",
                resource_type="plan",
                metadata={"plans": inserted},
            )
        else:
            logger.info("Default plans already present, nothing seeded")

        return inserted

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    async def get_plan(self, name, include_inactive: bool = False) -> Optional[Plan]:
        """Get an active plan by name. Absent or inactive returns None.

        include_inactive is for entitlement checks of existing subscribers,
        who keep a plan that was withdrawn from new subscriptions.
        """
        plan_name = _coerce_plan_name(name)
        if plan_name is None:
            return None

        query = {"name": plan_name.value}
        if not include_inactive:
            query["is_active"] = True
        db = database.get_db()
        doc = await db.plans.find_one(query, {"_id": 0})
        if not doc:
            return None
        return Plan(**doc)

    async def list_active_plans(self) -> List[Plan]:
        """Active plans ordered by ascending price."""
        db = database.get_db()
        docs = await db.plans.find(
            {"is_active": True},
            {"_id": 0}
        ).sort("price", 1).to_list(length=100)
        return [Plan(**doc) for doc in docs]

    async def list_all_plans(self) -> List[Plan]:
        """Every catalog entry including inactive ones (operator view)."""
        db = database.get_db()
        docs = await db.plans.find({}, {"_id": 0}).sort("price", 1).to_list(length=100)
        return [Plan(**doc) for doc in docs]

    def report_limit(self, plan: Optional[Plan]) -> Optional[int]:
        """Monthly report cap for a plan. None means unlimited."""
        if plan is None:
            return DEFAULT_REPORT_LIMIT

        features = plan.features.model_dump()
        if features.get("unlimited_reports"):
            return None

        raw = features.get("max_reports_per_month")
        if raw is None:
            return DEFAULT_REPORT_LIMIT
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return DEFAULT_REPORT_LIMIT
        if math.isnan(value):
            return DEFAULT_REPORT_LIMIT
        if value < 0:
            return None
        return int(value)

    def get_features(self, plan: Optional[Plan]) -> Dict[str, Any]:
        if plan is None:
            return dict(DEFAULT_PLANS[PlanName.FREE]["features"])
        return plan.features.model_dump()

    def check_feature_access(
        self,
        plan: Optional[Plan],
        feature: str
    ) -> Tuple[bool, Optional[str], Optional[Dict]]:
        """
        Check if a boolean feature flag is enabled for the plan.

        Returns:
            (is_allowed, upgrade_message, upgrade_info)
        """
        if self.get_features(plan).get(feature) is True:
            return True, None, None

        feature_name = FEATURE_METADATA.get(feature, {}).get("name", feature)
        upgrade_info = {
            "required_plan": PlanName.PREMIUM.value,
            "feature_key": feature,
            "feature_name": feature_name,
            "upgrade_path": "/subscription?upgrade_to=premium",
        }
        return False, f"{feature_name} requires the Premium plan", upgrade_info

    # -------------------------------------------------------------------------
    # Operator maintenance
    # -------------------------------------------------------------------------

    async def update_plan(
        self,
        name,
        changes: PlanUpdate,
        actor_id: Optional[str] = None
    ) -> Tuple[bool, str, Optional[Plan]]:
        """Apply an operator edit to a catalog entry.

        Returns:
            (success, message, updated_plan)
        """
        plan_name = _coerce_plan_name(name)
        if plan_name is None:
            return False, f"Unknown plan: {name}", None

        db = database.get_db()
        before = await db.plans.find_one({"name": plan_name.value}, {"_id": 0})
        if not before:
            return False, f"Plan not found: {plan_name.value}", None

        update_fields = changes.model_dump(exclude_none=True, mode="json")
        if not update_fields:
            return False, "No changes supplied", Plan(**before)

        set_doc: Dict[str, Any] = {}
        features = update_fields.pop("features", None)
        if features:
            error = _invalid_features(features, before.get("features") or {})
            if error:
                logger.warning(f"Rejected edit of plan {plan_name.value} by {actor_id}: {error}")
                return False, error, Plan(**before)
            # Merge feature keys individually so unspecified flags keep their values
            for key, value in features.items():
                set_doc[f"features.{key}"] = value
        set_doc.update(update_fields)
        set_doc["updated_at"] = datetime.now(timezone.utc)

        await db.plans.update_one({"name": plan_name.value}, {"$set": set_doc})
        after = await db.plans.find_one({"name": plan_name.value}, {"_id": 0})

        await create_audit_log(
            action=AuditAction.PLAN_UPDATED,
            actor_role="admin",
            actor_id=actor_id,
            resource_type="plan",
            resource_id=plan_name.value,
            before_state=_audit_view(before),
            after_state=_audit_view(after),
        )
        logger.info(f"Plan {plan_name.value} updated by {actor_id}: {sorted(set_doc.keys())}")
        return True, "Plan updated", Plan(**after)


def _invalid_features(changes: Dict[str, Any], current: Dict[str, Any]) -> Optional[str]:
    """Reason a feature edit cannot be stored, or None when it is valid."""
    cap = changes.get("max_reports_per_month")
    if cap is not None and (
        isinstance(cap, bool) or not isinstance(cap, (int, float)) or not math.isfinite(cap)
    ):
        return "max_reports_per_month must be a number (-1 for unlimited)"
    try:
        PlanFeatures(**{**current, **changes})
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"])
        return f"Invalid value for {field}: {first['msg']}"
    return None


def _audit_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k not in ("created_at", "updated_at")}


plan_registry = PlanRegistryService()
