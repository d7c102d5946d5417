"""Report submission entry point guarded by the monthly quota.

Report content validation and case workflow belong to the reports service;
this router only admits submissions, records them, and charges quota.

POST /api/reports/submit - Admission gate -> reserve a slot -> write report
GET  /api/reports/{report_id}/download - Export of one report (plans with download_reports)
"""
from fastapi import APIRouter, Depends, HTTPException, status
from datetime import datetime, timezone
from database import database
from middleware import require_user
from middleware.report_gating import require_feature, require_report_quota
from models import AdmissionDecision, ReportSubmission, UserRole
from services.usage_counter import LIMIT_REACHED_MESSAGE, period_key, usage_counter
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/reports", tags=["reports"])


@router.post("/submit", status_code=status.HTTP_201_CREATED)
async def submit_report(
    body: ReportSubmission,
    decision: AdmissionDecision = Depends(require_report_quota),
    user: dict = Depends(require_user),
):
    """Admit and store a report. Quota is charged with an atomic conditional increment."""
    user_id = user["user_id"]
    now = datetime.now(timezone.utc)
    reserved_period = None

    if decision.counts_against_quota:
        # The pre-flight check is optimistic; this increment is the real gate
        if not await usage_counter.consume(user_id, decision.reports_limit, now=now):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "message": LIMIT_REACHED_MESSAGE,
                    "requiresUpgrade": True,
                    "currentPlan": decision.current_plan.value,
                    "reportsUsed": decision.reports_limit,
                    "reportsLimit": decision.reports_limit,
                    "remainingReports": 0,
                },
            )
        reserved_period = period_key(now)

    report_id = str(uuid.uuid4())
    try:
        db = database.get_db()
        await db.reports.insert_one({
            "report_id": report_id,
            "user_id": user_id,
            "status": "submitted",
            "content": body.model_dump(),
            "counted_against_quota": reserved_period is not None,
            "created_at": now,
        })
    except Exception:
        if reserved_period:
            await usage_counter.release(user_id, reserved_period)
            logger.warning(f"Report write failed for user {user_id}; quota slot released")
        raise

    logger.info(f"Report {report_id} submitted by user {user_id} ({decision.reason})")
    remaining = None
    if decision.reports_limit is not None:
        remaining = max(decision.reports_limit - (decision.reports_used or 0) - 1, 0)

    return {
        "success": True,
        "report_id": report_id,
        "usage": {
            "counted": reserved_period is not None,
            "reportsLimit": decision.reports_limit,
            "remainingReports": remaining,
        },
    }


@router.get("/{report_id}/download")
async def download_report(report_id: str, user: dict = Depends(require_feature("download_reports"))):
    """Export a single report as JSON. Gated on the plan's download_reports flag; admins bypass."""
    db = database.get_db()
    query = {"report_id": report_id}
    if user.get("role") != UserRole.ADMIN.value:
        query["user_id"] = user["user_id"]

    report = await db.reports.find_one(query, {"_id": 0})
    if not report:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Report not found")
    return {"success": True, "report": report}
