"""
Report Admission Gating
Server-side enforcement of the monthly report quota and plan feature flags.
Subscription state is read fresh (with lazy expiry) on every request; nothing
is trusted from the token or request body.
"""
from fastapi import Depends, HTTPException, Request
from middleware import require_user
from models import AdmissionDecision, AuditAction, PlanName, UserRole
from services.plan_registry import plan_registry
from services.subscription_state import subscription_state
from services.usage_counter import usage_counter
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)


async def require_report_quota(request: Request, user: dict = Depends(require_user)) -> AdmissionDecision:
    """
    Dependency that admits a report submission or raises 403.

    Usage:
        @router.post("/submit")
        async def submit(decision: AdmissionDecision = Depends(require_report_quota)):
            ...
    """
    decision = await usage_counter.check(user)
    request.state.user = user

    if decision.allowed:
        return decision

    await create_audit_log(
        action=AuditAction.REPORT_ADMISSION_DENIED,
        actor_role=user.get("role"),
        actor_id=user["user_id"],
        user_id=user["user_id"],
        metadata={
            "reports_used": decision.reports_used,
            "reports_limit": decision.reports_limit,
            "endpoint": str(request.url.path),
            "method": request.method,
        },
    )
    logger.warning(
        "Report admission denied: user_id=%s used=%s limit=%s endpoint=%s",
        user["user_id"], decision.reports_used, decision.reports_limit, request.url.path,
    )

    raise HTTPException(
        status_code=403,
        detail={
            "message": decision.reason,
            "requiresUpgrade": True,
            "currentPlan": decision.current_plan.value,
            "reportsUsed": decision.reports_used,
            "reportsLimit": decision.reports_limit,
            "remainingReports": 0,
        },
    )


def require_feature(feature_key: str):
    """
    Dependency factory gating an endpoint on a plan feature flag.

    The flag is read from the catalog entry of the user's effective plan on
    every request, so an operator edit applies immediately. Paid-plan flags
    apply only while the paid period is active. Admins are never plan-gated.

    Usage:
        @router.get("/{report_id}/download")
        async def download(user: dict = Depends(require_feature("download_reports"))):
            ...
    """
    async def dependency(request: Request, user: dict = Depends(require_user)) -> dict:
        if user.get("role") == UserRole.ADMIN.value:
            return user

        effective = await subscription_state.get_effective(user["user_id"])
        plan_name = effective.plan if effective.is_premium_active else PlanName.FREE
        plan = await plan_registry.get_plan(plan_name, include_inactive=True)
        allowed, message, upgrade_info = plan_registry.check_feature_access(plan, feature_key)
        if allowed:
            return user

        if effective.is_premium_active:
            message = f"{upgrade_info['feature_name']} is not included in your current plan"

        await create_audit_log(
            action=AuditAction.FEATURE_ACCESS_DENIED,
            actor_role=user.get("role"),
            actor_id=user["user_id"],
            user_id=user["user_id"],
            metadata={
                "feature_key": feature_key,
                "plan": plan_name.value,
                "subscription_status": effective.status.value,
                "endpoint": str(request.url.path),
                "method": request.method,
            },
        )
        logger.info(
            "Feature access denied: user_id=%s plan=%s status=%s feature=%s endpoint=%s",
            user["user_id"], plan_name.value, effective.status.value, feature_key, request.url.path,
        )
        raise HTTPException(
            status_code=403,
            detail={
                "message": message,
                "requiresUpgrade": not effective.is_premium_active,
                "currentPlan": effective.plan.value,
                "subscriptionStatus": effective.status.value,
                "requiredPlan": upgrade_info["required_plan"],
                "feature": upgrade_info["feature_key"],
                "featureName": upgrade_info["feature_name"],
                "upgradePath": upgrade_info["upgrade_path"],
            },
        )

    return dependency
