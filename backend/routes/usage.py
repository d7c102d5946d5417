"""Usage Routes

GET /api/usage - Current month report usage for the signed-in user
"""
from fastapi import APIRouter, Depends
from middleware import require_user
from services.usage_counter import usage_counter

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("")
async def get_usage(user: dict = Depends(require_user)):
    """Read-only usage snapshot; applies month rollover lazily."""
    return {"success": True, "usage": await usage_counter.snapshot(user)}
