"""Admin Plan Maintenance Routes

GET   /api/admin/plans - Every catalog entry, including inactive ones
PATCH /api/admin/plans/{name} - Edit price, display fields, features or is_active
"""
from fastapi import APIRouter, Depends, HTTPException, status
from middleware import require_admin
from models import PlanUpdate
from services.plan_registry import plan_registry
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/plans", tags=["admin-plans"])


@router.get("")
async def list_plans(admin: dict = Depends(require_admin)):
    plans = await plan_registry.list_all_plans()
    return {"success": True, "plans": [plan.model_dump(mode="json") for plan in plans]}


@router.patch("/{name}")
async def update_plan(name: str, body: PlanUpdate, admin: dict = Depends(require_admin)):
    """Operator edit. Changes persist across restarts; seeding never overwrites them."""
    success, message, plan = await plan_registry.update_plan(name, body, actor_id=admin["user_id"])
    if not success:
        code = status.HTTP_400_BAD_REQUEST if plan is not None else status.HTTP_404_NOT_FOUND
        raise HTTPException(status_code=code, detail=message)
    return {"success": True, "message": message, "plan": plan.model_dump(mode="json")}
